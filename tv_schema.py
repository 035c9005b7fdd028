"""Спільні TypedDict-схеми та константи протоколу стріму.

Модуль описує «контракти» JSON-повідомлень upstream (payload schemas), таблиці
методів для роутера та довідники: профілі полів котирувань, ідентифікатори
кастомних типів графіка, дефолтні опції вбудованих індикаторів.
TypedDict-и тут не впливають на runtime, але фіксують очікувані поля/типи.
"""

from __future__ import annotations

from typing import Any, Dict, FrozenSet, List, Mapping, Tuple

from typing_extensions import Literal, TypedDict

SessionKind = Literal["chart", "quote", "replay", "history"]

# Префікси ідентифікаторів сесій (`cs_xxxxxxxxxxxx`).
SESSION_PREFIXES: Mapping[str, str] = {
    "chart": "cs",
    "quote": "qs",
    "replay": "rs",
    "history": "hs",
}

UNAUTHORIZED_TOKEN = "unauthorized_user_token"
ORIGIN = "https://www.tradingview.com"
DEFAULT_LOCATION = "https://www.tradingview.com/"
KNOWN_SERVERS: FrozenSet[str] = frozenset({"data", "prodata", "widgetdata", "history-data"})
HISTORY_SERVER = "history-data"

PRICES_SERIES = "$prices"
SERIES_TURNAROUND = "s1"
STUDY_TURNAROUND = "st1"
REPLAY_ADD_SERIES_REQUEST = "req_replay_addseries"

PINE_SCRIPT_TYPE = "Script@tv-scripting-101!"
STRATEGY_SCRIPT_TYPE = "StrategyScript@tv-scripting-101!"

# Кастомні типи графіка → upstream id відповідного bar-set study.
CHART_TYPES: Mapping[str, str] = {
    "HeikinAshi": "BarSetHeikenAshi@tv-basicstudies-60!",
    "Renko": "BarSetRenko@tv-prostudies-40!",
    "LineBreak": "BarSetPriceBreak@tv-prostudies-34!",
    "Kagi": "BarSetKagi@tv-prostudies-34!",
    "PointAndFigure": "BarSetPnF@tv-prostudies-34!",
    "Range": "BarSetRange@tv-basicstudies-72!",
}

ADJUSTMENTS: FrozenSet[str] = frozenset({"splits", "dividends", "none"})
MARKET_SESSIONS: FrozenSet[str] = frozenset({"regular", "extended"})


class EnvelopeJson(TypedDict):
    """Сирий конверт на дроті: `{"m": method, "p": params}`."""

    m: str
    p: List[Any]


class ServerHelloPayload(TypedDict, total=False):
    session_id: str
    timestamp: int
    timestampMs: int
    release: str
    studies_metadata_hash: str
    protocol: str
    auth_scheme_vsn: int
    javastudies: str


class SeriesRowJson(TypedDict):
    """Рядок `s`/`st`: `v = [time, open, high, low, close, volume, ...]` або значення plot-ів."""

    i: int
    v: List[float]


class SymbolInfos(TypedDict, total=False):
    """Метадані символу з `symbol_resolved` (набір полів залежить від ринку)."""

    series_id: str
    name: str
    full_name: str
    pro_name: str
    description: str
    exchange: str
    listed_exchange: str
    type: str
    currency_code: str
    pricescale: int
    minmov: int
    session: str
    timezone: str
    has_intraday: bool
    visible_plots_set: str


# Ключ символу для `resolve_symbol` (серіалізується як `=` + JSON).
# Функціональний синтаксис через поле `currency-id`.
SymbolInit = TypedDict(
    "SymbolInit",
    {
        "symbol": str,
        "adjustment": str,
        "backadjustment": str,
        "session": str,
        "currency-id": str,
    },
    total=False,
)


class StrategyPerformance(TypedDict, total=False):
    all: Dict[str, Any]
    long: Dict[str, Any]
    short: Dict[str, Any]
    buyHold: float
    buyHoldPercent: float
    openPL: float
    openPLPercent: float
    maxStrategyDrawDown: float
    sharpeRatio: float
    sortinoRatio: float
    profitFactor: float


class StrategyReport(TypedDict, total=False):
    """Звіт стратегії з `ns.d` (`data.report` або розпакований `dataCompressed`)."""

    currency: str
    settings: Dict[str, Any]
    performance: StrategyPerformance
    trades: List[Dict[str, Any]]
    history: Dict[str, Any]


class QuoteDataPayload(TypedDict, total=False):
    """Елемент `qsd`: `{n: symbol_key, s: "ok"|"error", v: {field: value}}`."""

    n: str
    s: str
    v: Dict[str, Any]
    errmsg: str


HistoryRequestPayload = TypedDict(
    "HistoryRequestPayload",
    {
        "adjustment": str,
        "currency-id": str,
        "session": str,
        "symbol": str,
    },
)


# ── Runtime-контракти ────────────────────────────────────────────────────────
ENVELOPE_KEYS = frozenset({"m", "p"})

SYMBOL_INIT_REQUIRED_KEYS = frozenset({"symbol"})
SYMBOL_INIT_ALLOWED_KEYS = frozenset({"symbol", "adjustment", "backadjustment", "session", "currency-id"})

QUOTE_DATA_STATUSES = frozenset({"ok", "error"})


def validate_envelope_contract(payload: Mapping[str, Any]) -> None:
    """Runtime-валідація вихідного конверта `{"m": method, "p": params}`.

    Мета: fail-fast, якщо сесія зібрала команду не тієї форми.
    """

    if not isinstance(payload, Mapping):
        raise ValueError("Конверт має бути mapping (dict)")
    keys = set(payload.keys())
    if keys != ENVELOPE_KEYS:
        raise ValueError(f"Конверт: очікуються поля {sorted(ENVELOPE_KEYS)}, отримано {sorted(keys)}")
    method = payload.get("m")
    if not isinstance(method, str) or not method:
        raise ValueError("Конверт: 'm' має бути непорожнім рядком")
    if not isinstance(payload.get("p"), list):
        raise ValueError("Конверт: 'p' має бути масивом")


def validate_symbol_init_contract(payload: Mapping[str, Any]) -> None:
    """Runtime-валідація ключа символу перед серіалізацією (`=` + JSON)."""

    if not isinstance(payload, Mapping):
        raise ValueError("Ключ символу має бути mapping (dict)")
    keys = set(payload.keys())
    missing = SYMBOL_INIT_REQUIRED_KEYS - keys
    if missing:
        raise ValueError(f"Ключ символу: бракує полів: {sorted(missing)}")
    extra = keys - SYMBOL_INIT_ALLOWED_KEYS
    if extra:
        raise ValueError(f"Ключ символу: зайві поля (не в контракті): {sorted(extra)}")
    for key in keys:
        value = payload.get(key)
        if not isinstance(value, str) or not value:
            raise ValueError(f"Ключ символу: '{key}' має бути непорожнім рядком")


def validate_quote_data_contract(payload: Mapping[str, Any]) -> None:
    """Runtime-валідація вхідного елемента `qsd`.

    Нові поля від upstream не вважаються помилкою; перевіряються лише ті,
    від яких залежить маршрутизація і злиття.
    """

    if not isinstance(payload, Mapping):
        raise ValueError("qsd payload має бути mapping (dict)")
    name = payload.get("n")
    if not isinstance(name, str) or not name:
        raise ValueError("qsd payload: 'n' має бути непорожнім рядком")
    status = payload.get("s")
    if status is not None and status not in QUOTE_DATA_STATUSES:
        raise ValueError(f"qsd payload: невідомий статус {status!r}")
    values = payload.get("v")
    if values is not None and not isinstance(values, Mapping) and status != "error":
        raise ValueError("qsd payload: 'v' має бути mapping (dict)")


# ── Таблиці методів роутера ───────────────────────────────────────────────────
CHART_METHODS: Tuple[str, ...] = (
    "symbol_resolved",
    "symbol_error",
    "series_loading",
    "series_completed",
    "series_error",
    "critical_error",
    "timescale_update",
    "du",
    "study_loading",
    "study_completed",
    "study_error",
)
QUOTE_METHODS: Tuple[str, ...] = ("qsd", "quote_completed")
REPLAY_METHODS: Tuple[str, ...] = (
    "replay_ok",
    "replay_error",
    "replay_instance_id",
    "replay_point",
    "replay_resolutions",
    "replay_data_end",
)
HISTORY_METHODS: Tuple[str, ...] = ("request_data", "du", "symbol_error", "critical_error", "request_error")
GLOBAL_METHODS: Tuple[str, ...] = ("protocol_error",)

SESSION_SCOPED_METHODS: FrozenSet[str] = frozenset(
    CHART_METHODS + QUOTE_METHODS + REPLAY_METHODS + HISTORY_METHODS
)

# ── Профілі полів котирувань ──────────────────────────────────────────────────
QUOTE_FIELDS_MINIMAL: Tuple[str, ...] = (
    "lp",
    "lp_time",
    "ch",
    "chp",
    "bid",
    "ask",
    "volume",
    "current_session",
    "status",
)

QUOTE_FIELDS_FULL: Tuple[str, ...] = (
    "base-currency-logoid",
    "ch",
    "chp",
    "currency-logoid",
    "currency_code",
    "current_session",
    "description",
    "exchange",
    "format",
    "fractional",
    "is_tradable",
    "language",
    "local_description",
    "logoid",
    "lp",
    "lp_time",
    "minmov",
    "minmove2",
    "original_name",
    "pricescale",
    "pro_name",
    "short_name",
    "type",
    "update_mode",
    "volume",
    "ask",
    "bid",
    "fundamentals",
    "high_price",
    "low_price",
    "open_price",
    "prev_close_price",
    "rch",
    "rchp",
    "rtc",
    "rtc_time",
    "status",
    "industry",
    "basic_eps_net_income",
    "beta_1_year",
    "market_cap_basic",
    "earnings_per_share_basic_ttm",
    "price_earnings_ttm",
    "sector",
    "dividends_yield",
    "timezone",
    "country_code",
    "provider_id",
)

QUOTE_FIELD_PROFILES: Mapping[str, Tuple[str, ...]] = {
    "minimal": QUOTE_FIELDS_MINIMAL,
    "full": QUOTE_FIELDS_FULL,
}


# ── Вбудовані індикатори ─────────────────────────────────────────────────────
class BuiltInDefaults(TypedDict):
    inputs: Dict[str, Any]
    plots: List[str]


BUILTIN_INDICATORS: Mapping[str, BuiltInDefaults] = {
    "Volume@tv-basicstudies-241": {
        "inputs": {"length": 20, "col_prev_close": False},
        "plots": ["Volume", "Volume MA"],
    },
    "RSI@tv-basicstudies-1": {
        "inputs": {"length": 14},
        "plots": ["RSI"],
    },
    "MACD@tv-basicstudies-1": {
        "inputs": {"fastLength": 12, "slowLength": 26, "signalLength": 9, "source": "close"},
        "plots": ["Histogram", "MACD", "Signal"],
    },
    "BB@tv-basicstudies-1": {
        "inputs": {"length": 20, "mult": 2},
        "plots": ["Median", "Upper", "Lower"],
    },
    "VbPFixed@tv-basicstudies-241": {
        "inputs": {
            "rowsLayout": "Number Of Rows",
            "rows": 24,
            "volume": "Up/Down",
            "vaVolume": 70,
            "subscribeRealtime": False,
            "first_bar_time": None,
            "last_bar_time": None,
            "extendToRight": False,
            "mapRightBoundaryToBarStartTime": True,
        },
        "plots": [],
    },
    "VbPSessions@tv-volumebyprice-53": {
        "inputs": {
            "rowsLayout": "Number Of Rows",
            "rows": 24,
            "volume": "Up/Down",
            "vaVolume": 70,
            "extendPocRight": False,
        },
        "plots": [],
    },
    "VbPVisible@tv-volumebyprice-53": {
        "inputs": {
            "rowsLayout": "Number Of Rows",
            "rows": 24,
            "volume": "Up/Down",
            "vaVolume": 70,
            "subscribeRealtime": False,
            "first_visible_bar_time": None,
            "last_visible_bar_time": None,
        },
        "plots": [],
    },
}

# Типи графічних об'єктів у `graphicsCmds.create`.
GRAPHIC_KINDS: Tuple[str, ...] = (
    "dwglabels",
    "dwglines",
    "dwgboxes",
    "dwgtables",
    "dwgtablecells",
    "polygons",
    "hhists",
    "horizlines",
)
