"""Конфігураційні структури та завантаження ENV для стрімінгового клієнта."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from dotenv import load_dotenv

from tv_schema import DEFAULT_LOCATION, HISTORY_SERVER, KNOWN_SERVERS, UNAUTHORIZED_TOKEN

METRICS_DEFAULT_PORT = 9200
RUNTIME_SETTINGS_FILE = Path("config/runtime_settings.json")
ENDPOINT_TEMPLATE = "wss://{server}.tradingview.com/socket.io/websocket?type=chart"

MIN_CONNECT_TIMEOUT_MS = 1000


def _load_json_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:  # pragma: no cover - конфіг краще падати одразу
        raise ValueError(f"Некоректний JSON у {path}: {exc}") from exc


def _get_int_env(name: str, default: int, *, min_value: int = 1) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(min_value, value)


def _get_float_env(name: str, default: float, *, min_value: float = 0.0) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(min_value, value)


def _get_bool_env(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _get_str_env(name: str) -> Optional[str]:
    raw = os.environ.get(name)
    if raw is None:
        return None
    return raw.strip() or None


def _coerce_int(value: Any, default: int, *, min_value: int = 1) -> int:
    if value is None:
        return default
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return max(min_value, parsed)


def _coerce_float(value: Any, default: float, *, min_value: float = 0.0) -> float:
    if value is None:
        return default
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return default
    return max(min_value, parsed)


def _coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "y", "on"}:
            return True
        if lowered in {"0", "false", "no", "n", "off"}:
            return False
    return default


def _ms(value: Any, default_seconds: float, *, min_ms: float = 0.0) -> float:
    """Мілісекунди з опцій → секунди."""

    if value is None:
        return default_seconds
    return _coerce_float(value, default_seconds * 1000.0, min_value=min_ms) / 1000.0


@dataclass(frozen=True)
class ReconnectPolicy:
    max_retries: int = 10
    fast_first_delay: float = 0.25
    base_delay: float = 0.5
    max_delay: float = 30.0
    multiplier: float = 2.0
    jitter: bool = True


@dataclass(frozen=True)
class AuthSettings:
    max_attempts: int = 2
    retry_delay: float = 0.5
    # Скільки чекати відповіді після auth-конверта, перш ніж вважати сесію авторизованою.
    settle_timeout: float = 0.0


@dataclass(frozen=True)
class KeepaliveSettings:
    check_interval: float = 10.0
    max_missed: int = 3


@dataclass(frozen=True)
class ObservabilitySettings:
    metrics_enabled: bool = False
    metrics_port: int = METRICS_DEFAULT_PORT


@dataclass(frozen=True)
class ClientConfig:
    """Повна конфігурація `StreamClient`.

    `token`: готовий auth-токен; якщо його немає, але задано `session`
    (cookie `sessionid`), токен отримується з HTTP-сторінки `location`.
    Без обох клієнт працює анонімно з токеном `unauthorized_user_token`.
    """

    token: Optional[str] = None
    session: Optional[str] = None
    signature: str = ""
    server: str = "data"
    chart_id: Optional[str] = None
    location: str = DEFAULT_LOCATION
    compression: bool = True
    auto_rehydrate: bool = True
    strict_protocol: bool = False
    connect_timeout: float = 15.0
    request_timeout: float = 30.0
    history_timeout: float = 30.0
    delivery_high_water: int = 1000
    reconnect: ReconnectPolicy = field(default_factory=ReconnectPolicy)
    auth: AuthSettings = field(default_factory=AuthSettings)
    keepalive: KeepaliveSettings = field(default_factory=KeepaliveSettings)
    observability: ObservabilitySettings = field(default_factory=ObservabilitySettings)
    debug: bool = False
    logger: Optional[logging.Logger] = None

    def __post_init__(self) -> None:
        if self.server not in KNOWN_SERVERS:
            raise ValueError(
                f"Невідомий сервер '{self.server}'; допустимі: {', '.join(sorted(KNOWN_SERVERS))}"
            )
        if self.server == HISTORY_SERVER and not self.chart_id:
            raise ValueError("Сервер history-data потребує chart_id")

    @property
    def anonymous(self) -> bool:
        return not self.token and not self.session

    @property
    def static_token(self) -> str:
        return self.token or UNAUTHORIZED_TOKEN

    def endpoint_url(self) -> str:
        url = ENDPOINT_TEMPLATE.format(server=self.server)
        if self.chart_id:
            url += f"&chartId={self.chart_id}"
        return url

    def with_overrides(self, **changes: Any) -> "ClientConfig":
        return replace(self, **changes)

    @classmethod
    def from_options(cls, options: Optional[Mapping[str, Any]] = None, **kwargs: Any) -> "ClientConfig":
        """Збирає конфіг з опцій у camelCase (як у JS-клієнтів) або snake_case."""

        merged: Dict[str, Any] = dict(options or {})
        merged.update(kwargs)

        def pick(*names: str) -> Any:
            for name in names:
                if name in merged and merged[name] is not None:
                    return merged[name]
            return None

        base_reconnect = ReconnectPolicy()
        reconnect = ReconnectPolicy(
            max_retries=_coerce_int(
                pick("reconnectMaxRetries", "reconnect_max_retries"), base_reconnect.max_retries, min_value=0
            ),
            fast_first_delay=_ms(pick("reconnectFastFirstDelayMs", "reconnect_fast_first_delay_ms"), base_reconnect.fast_first_delay),
            base_delay=_ms(pick("reconnectBaseDelayMs", "reconnect_base_delay_ms"), base_reconnect.base_delay),
            max_delay=_ms(pick("reconnectMaxDelayMs", "reconnect_max_delay_ms"), base_reconnect.max_delay),
            multiplier=_coerce_float(
                pick("reconnectMultiplier", "reconnect_multiplier"), base_reconnect.multiplier, min_value=1.0
            ),
            jitter=_coerce_bool(pick("reconnectJitter", "reconnect_jitter"), base_reconnect.jitter),
        )
        if reconnect.max_delay < reconnect.base_delay:
            reconnect = replace(reconnect, max_delay=reconnect.base_delay)

        base_auth = AuthSettings()
        auth = AuthSettings(
            max_attempts=_coerce_int(pick("authMaxAttempts", "auth_max_attempts"), base_auth.max_attempts, min_value=1),
            retry_delay=_ms(pick("authRetryDelayMs", "auth_retry_delay_ms"), base_auth.retry_delay),
            settle_timeout=_ms(pick("authSettleTimeoutMs", "auth_settle_timeout_ms"), base_auth.settle_timeout),
        )

        base_keepalive = KeepaliveSettings()
        keepalive = KeepaliveSettings(
            check_interval=_ms(
                pick("keepaliveIntervalMs", "keepalive_interval_ms"), base_keepalive.check_interval, min_ms=100.0
            ),
            max_missed=_coerce_int(pick("keepaliveMaxMissed", "keepalive_max_missed"), base_keepalive.max_missed),
        )

        observability = pick("observability")
        if not isinstance(observability, ObservabilitySettings):
            observability = ObservabilitySettings()

        return cls(
            token=pick("token", "authToken", "auth_token"),
            session=pick("session", "sessionId", "session_id"),
            signature=str(pick("signature") or ""),
            server=str(pick("server") or "data"),
            chart_id=pick("chartId", "chart_id"),
            location=str(pick("location") or DEFAULT_LOCATION),
            compression=_coerce_bool(pick("compression"), True),
            auto_rehydrate=_coerce_bool(pick("autoRehydrate", "auto_rehydrate"), True),
            strict_protocol=_coerce_bool(pick("strictProtocol", "strict_protocol"), False),
            connect_timeout=_ms(
                pick("connectTimeoutMs", "connect_timeout_ms"), 15.0, min_ms=float(MIN_CONNECT_TIMEOUT_MS)
            ),
            request_timeout=_ms(pick("requestTimeoutMs", "request_timeout_ms"), 30.0, min_ms=1.0),
            history_timeout=_ms(pick("historyTimeoutMs", "history_timeout_ms"), 30.0, min_ms=1.0),
            delivery_high_water=_coerce_int(pick("deliveryHighWater", "delivery_high_water"), 1000),
            reconnect=reconnect,
            auth=auth,
            keepalive=keepalive,
            observability=observability,
            debug=_coerce_bool(pick("debug"), False),
            logger=pick("logger"),
        )


def _load_runtime_settings() -> Dict[str, Any]:
    return _load_json_file(RUNTIME_SETTINGS_FILE)


def _section(payload: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = payload.get(name)
    return value if isinstance(value, Mapping) else {}


def load_config(*, env_file: Optional[str] = None, **overrides: Any) -> ClientConfig:
    """Зчитує `.env`, ENV (`TV_*`) та `config/runtime_settings.json`.

    Пріоритет: явні `overrides` > ENV > JSON > значення за замовчуванням.
    """

    if env_file:
        load_dotenv(dotenv_path=env_file)
    else:
        load_dotenv()

    runtime_settings = _load_runtime_settings()
    reconnect_cfg = _section(runtime_settings, "reconnect")
    keepalive_cfg = _section(runtime_settings, "keepalive")
    timeouts_cfg = _section(runtime_settings, "timeouts")
    auth_cfg = _section(runtime_settings, "auth")

    base_reconnect = ReconnectPolicy()
    json_reconnect = ReconnectPolicy(
        max_retries=_coerce_int(reconnect_cfg.get("max_retries"), base_reconnect.max_retries, min_value=0),
        fast_first_delay=_coerce_float(reconnect_cfg.get("fast_first_delay"), base_reconnect.fast_first_delay),
        base_delay=_coerce_float(reconnect_cfg.get("base_delay"), base_reconnect.base_delay),
        max_delay=_coerce_float(reconnect_cfg.get("max_delay"), base_reconnect.max_delay),
        multiplier=_coerce_float(reconnect_cfg.get("multiplier"), base_reconnect.multiplier, min_value=1.0),
        jitter=_coerce_bool(reconnect_cfg.get("jitter"), base_reconnect.jitter),
    )
    reconnect = ReconnectPolicy(
        max_retries=_get_int_env("TV_RECONNECT_MAX_RETRIES", json_reconnect.max_retries, min_value=0),
        fast_first_delay=json_reconnect.fast_first_delay,
        base_delay=_get_float_env("TV_RECONNECT_BASE_DELAY", json_reconnect.base_delay),
        max_delay=_get_float_env("TV_RECONNECT_MAX_DELAY", json_reconnect.max_delay),
        multiplier=json_reconnect.multiplier,
        jitter=_get_bool_env("TV_RECONNECT_JITTER", json_reconnect.jitter),
    )
    if reconnect.max_delay < reconnect.base_delay:
        reconnect = replace(reconnect, max_delay=reconnect.base_delay)

    base_auth = AuthSettings()
    auth = AuthSettings(
        max_attempts=_get_int_env(
            "TV_AUTH_MAX_ATTEMPTS",
            _coerce_int(auth_cfg.get("max_attempts"), base_auth.max_attempts),
        ),
        retry_delay=_coerce_float(auth_cfg.get("retry_delay"), base_auth.retry_delay),
        settle_timeout=_coerce_float(auth_cfg.get("settle_timeout"), base_auth.settle_timeout),
    )

    base_keepalive = KeepaliveSettings()
    keepalive = KeepaliveSettings(
        check_interval=_coerce_float(keepalive_cfg.get("check_interval"), base_keepalive.check_interval, min_value=0.1),
        max_missed=_coerce_int(keepalive_cfg.get("max_missed"), base_keepalive.max_missed),
    )

    observability = ObservabilitySettings(
        metrics_enabled=_get_bool_env("TV_METRICS_ENABLED", False),
        metrics_port=_get_int_env("TV_METRICS_PORT", METRICS_DEFAULT_PORT, min_value=1024),
    )

    connect_timeout = _coerce_float(
        timeouts_cfg.get("connect"), 15.0, min_value=MIN_CONNECT_TIMEOUT_MS / 1000.0
    )
    values: Dict[str, Any] = {
        "token": _get_str_env("TV_AUTH_TOKEN"),
        "session": _get_str_env("TV_SESSION"),
        "signature": _get_str_env("TV_SIGNATURE") or "",
        "server": _get_str_env("TV_SERVER") or "data",
        "chart_id": _get_str_env("TV_CHART_ID"),
        "location": _get_str_env("TV_LOCATION") or DEFAULT_LOCATION,
        "compression": _get_bool_env("TV_COMPRESSION", True),
        "auto_rehydrate": _get_bool_env("TV_AUTO_REHYDRATE", True),
        "strict_protocol": _get_bool_env("TV_STRICT_PROTOCOL", False),
        "connect_timeout": max(
            MIN_CONNECT_TIMEOUT_MS / 1000.0,
            _get_float_env("TV_CONNECT_TIMEOUT", connect_timeout),
        ),
        "request_timeout": _get_float_env(
            "TV_REQUEST_TIMEOUT", _coerce_float(timeouts_cfg.get("request"), 30.0, min_value=0.001)
        ),
        "history_timeout": _get_float_env(
            "TV_HISTORY_TIMEOUT", _coerce_float(timeouts_cfg.get("history"), 30.0, min_value=0.001)
        ),
        "delivery_high_water": _get_int_env("TV_DELIVERY_HIGH_WATER", 1000),
        "reconnect": reconnect,
        "auth": auth,
        "keepalive": keepalive,
        "observability": observability,
        "debug": _get_bool_env("TV_DEBUG", False),
    }
    values.update(overrides)
    return ClientConfig(**values)
