from __future__ import annotations

import types
import unittest
from typing import Any, List

import requests

from tv_auth import auth_cookies, fetch_user, parse_user
from tv_errors import AuthError

PAGE = (
    '<script>window.user = {"id":1234,"username":"trader","session_hash":"h1",'
    '"private_channel":"pc","auth_token":"tok-xyz","date_joined":"2020-01-01"};</script>'
)


def _response(status: int, text: str = "", location: str | None = None) -> Any:
    headers = {"location": location} if location else {}
    return types.SimpleNamespace(status_code=status, text=text, headers=headers)


class FakeHttp:
    """Мінімальна заміна `requests.Session` з чергою відповідей."""

    def __init__(self, *responses: Any) -> None:
        self._responses = list(responses)
        self.calls: List[tuple] = []

    def get(self, url: str, **kwargs: Any) -> Any:
        self.calls.append((url, kwargs))
        item = self._responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


class AuthCookiesTest(unittest.TestCase):
    def test_cookie_formats(self) -> None:
        self.assertEqual(auth_cookies(), "")
        self.assertEqual(auth_cookies("s"), "sessionid=s")
        self.assertEqual(auth_cookies("s", "g"), "sessionid=s;sessionid_sign=g")


class ParseUserTest(unittest.TestCase):
    def test_parses_user_fields(self) -> None:
        user = parse_user(PAGE, "sess", "sig")
        self.assertIsNotNone(user)
        self.assertEqual(user.auth_token, "tok-xyz")
        self.assertEqual(user.id, 1234)
        self.assertEqual(user.username, "trader")
        self.assertEqual(user.session_hash, "h1")
        self.assertEqual(user.signature, "sig")

    def test_page_without_token(self) -> None:
        self.assertIsNone(parse_user("<html></html>", "sess"))


class FetchUserTest(unittest.TestCase):
    def test_sends_cookies_and_parses_token(self) -> None:
        http = FakeHttp(_response(200, PAGE))
        user = fetch_user("sess", "sig", "https://www.tradingview.com/", http=http)
        self.assertEqual(user.auth_token, "tok-xyz")
        url, kwargs = http.calls[0]
        self.assertEqual(url, "https://www.tradingview.com/")
        self.assertEqual(kwargs["headers"]["cookie"], "sessionid=sess;sessionid_sign=sig")
        self.assertFalse(kwargs["allow_redirects"])

    def test_follows_redirects_with_cookies(self) -> None:
        http = FakeHttp(_response(302, location="/regional/"), _response(200, PAGE))
        user = fetch_user("sess", http=http)
        self.assertEqual(user.username, "trader")
        self.assertEqual(http.calls[1][0], "https://www.tradingview.com/regional/")
        self.assertEqual(http.calls[1][1]["headers"]["cookie"], "sessionid=sess")

    def test_non_success_status_is_auth_error(self) -> None:
        http = FakeHttp(_response(403, "forbidden"))
        with self.assertRaises(AuthError) as ctx:
            fetch_user("sess", http=http)
        self.assertEqual(ctx.exception.status, 403)

    def test_missing_token_is_auth_error(self) -> None:
        with self.assertRaises(AuthError):
            fetch_user("sess", http=FakeHttp(_response(200, "<html>logged out</html>")))

    def test_http_failure_is_auth_error(self) -> None:
        http = FakeHttp(requests.ConnectionError("dns"))
        with self.assertRaises(AuthError):
            fetch_user("sess", http=http)

    def test_too_many_redirects(self) -> None:
        http = FakeHttp(*[_response(301, location="/loop/") for _ in range(3)])
        with self.assertRaises(AuthError):
            fetch_user("sess", http=http, max_redirects=2)

    def test_redirect_without_location(self) -> None:
        with self.assertRaises(AuthError):
            fetch_user("sess", http=FakeHttp(_response(302)))

    def test_empty_session_is_rejected(self) -> None:
        with self.assertRaises(AuthError):
            fetch_user("", http=FakeHttp())


if __name__ == "__main__":
    unittest.main()
