"""Облікові дані та отримання auth-токена з HTTP-сторінки TradingView."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urljoin

import requests

from tv_errors import AuthError
from tv_schema import DEFAULT_LOCATION, ORIGIN

log = logging.getLogger("tv_connector.auth")
if not log.handlers:
    log.addHandler(logging.NullHandler())

DEFAULT_HTTP_TIMEOUT = 15.0
MAX_REDIRECTS = 5

_TOKEN_RE = re.compile(r'"auth_token":"(.*?)"')
_ID_RE = re.compile(r'"id":([0-9]{1,10}),')
_USERNAME_RE = re.compile(r'"username":"(.*?)"')
_SESSION_HASH_RE = re.compile(r'"session_hash":"(.*?)"')
_PRIVATE_CHANNEL_RE = re.compile(r'"private_channel":"(.*?)"')
_DATE_JOINED_RE = re.compile(r'"date_joined":"(.*?)"')


@dataclass(frozen=True)
class AuthUser:
    """Користувач, розпізнаний за cookie `sessionid`/`sessionid_sign`."""

    auth_token: str
    session: str
    signature: str = ""
    id: Optional[int] = None
    username: Optional[str] = None
    session_hash: Optional[str] = None
    private_channel: Optional[str] = None
    date_joined: Optional[str] = None


def auth_cookies(session: str = "", signature: str = "") -> str:
    """Заголовок Cookie для запитів від імені користувача."""

    if not session:
        return ""
    if not signature:
        return f"sessionid={session}"
    return f"sessionid={session};sessionid_sign={signature}"


def _search(pattern: "re.Pattern[str]", text: str) -> Optional[str]:
    match = pattern.search(text)
    return match.group(1) if match else None


def parse_user(text: str, session: str, signature: str = "") -> Optional[AuthUser]:
    token = _search(_TOKEN_RE, text)
    if not token:
        return None
    raw_id = _search(_ID_RE, text)
    return AuthUser(
        auth_token=token,
        session=session,
        signature=signature,
        id=int(raw_id) if raw_id else None,
        username=_search(_USERNAME_RE, text),
        session_hash=_search(_SESSION_HASH_RE, text),
        private_channel=_search(_PRIVATE_CHANNEL_RE, text),
        date_joined=_search(_DATE_JOINED_RE, text),
    )


def fetch_user(
    session: str,
    signature: str = "",
    location: str = DEFAULT_LOCATION,
    *,
    timeout: float = DEFAULT_HTTP_TIMEOUT,
    max_redirects: int = MAX_REDIRECTS,
    http: Optional[requests.Session] = None,
) -> AuthUser:
    """Завантажує сторінку `location` з cookie і витягує `auth_token`.

    Редиректи (наприклад, на регіональний домен) обробляються вручну, щоб
    cookie надсилалися на кожну адресу. Відповідь поза 2xx/3xx, сторінка без
    токена або забагато редиректів → `AuthError`.
    """

    if not session:
        raise AuthError("Не задано sessionid для отримання auth-токена")
    client = http or requests.Session()
    headers = {"cookie": auth_cookies(session, signature), "referer": ORIGIN}
    url = location
    for _ in range(max_redirects + 1):
        try:
            response = client.get(url, headers=headers, allow_redirects=False, timeout=timeout)
        except requests.RequestException as exc:
            raise AuthError(f"HTTP-помилка під час отримання auth-токена: {exc}") from exc

        status = response.status_code
        if 300 <= status < 400:
            target = response.headers.get("location")
            if not target:
                raise AuthError(f"Редирект без адреси ({status})", status=status)
            url = urljoin(url, target)
            log.debug("Auth-сторінка перенаправила на %s", url)
            continue
        if not 200 <= status < 300:
            raise AuthError(f"Auth-сторінка повернула статус {status}", status=status)

        user = parse_user(response.text, session, signature)
        if user is None:
            raise AuthError("Неправильний або прострочений sessionid/signature", status=status)
        log.debug("Отримано auth-токен для користувача %s", user.username or user.id)
        return user

    raise AuthError(f"Забагато редиректів під час авторизації (> {max_redirects})")
