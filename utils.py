"""Універсальні утиліти стрімінгового клієнта.

Призначення:
    • Нормалізація таймфреймів до upstream-конвенції (`5m` → `5`, `4h` → `240`)
    • Генерація ідентифікаторів сесій та запитів (потокобезпечно)
    • Побудова ключів символів для `resolve_symbol` / `quote_add_symbols`
    • Часові хелпери (`to_tv_timestamp`, `backtest_range`)
    • Уніфікація колонки `timestamp` у DataFrame

Принципи:
    • Відсутність побічних ефектів (чиста логіка), окрім лічильника id
    • Українська мова для коментарів / докстрінгів
"""

from __future__ import annotations

import datetime as dt
import itertools
import json
import logging
import re
import secrets
import string
import threading
import time
from typing import Any, Dict, Mapping, Optional, Tuple, Union

import pandas as pd

from tv_schema import SESSION_PREFIXES

log = logging.getLogger("tv_connector.utils")
if not log.handlers:
    log.addHandler(logging.NullHandler())

TimestampLike = Union[dt.datetime, dt.date, str, int, float, None]

_ID_ALPHABET = string.ascii_letters + string.digits
_ID_LENGTH = 12

# Єдиний процесний лічильник request id: кілька клієнтів у різних потоках
# не повинні видавати однакові id.
_REQUEST_COUNTER = itertools.count(1)
_REQUEST_COUNTER_LOCK = threading.Lock()

_TF_PREFIX_RE = re.compile(r"^([a-zA-Z])(\d+)$")
_TF_SUFFIX_RE = re.compile(r"^(\d*)\s*([a-zA-Z]+)$")

_SECONDS_PER_UNIT = {"D": 86_400, "W": 604_800, "M": 2_592_000}


# ── Таймфрейми ───────────────────────────────────────────────────────────────
def _compose_timeframe(count: int, unit: str) -> str:
    if count <= 0:
        raise ValueError(f"Таймфрейм має бути додатнім: {count}{unit}")
    if unit == "m":
        return str(count)
    if unit == "h":
        return str(count * 60)
    if unit == "s":
        return f"{count}S"
    if unit in ("D", "W", "M"):
        return unit if count == 1 else f"{count}{unit}"
    raise ValueError(f"Невідома одиниця таймфрейму: {unit}")


def _canonical_unit(raw: str) -> Optional[str]:
    if raw == "M" or raw.lower() in ("mo", "mon", "month", "mn"):
        return "M"
    lower = raw.lower()
    if lower in ("m", "min", "mins", "minute", "minutes"):
        return "m"
    if lower in ("h", "hr", "hour", "hours"):
        return "h"
    if lower in ("d", "day", "days"):
        return "D"
    if lower in ("w", "wk", "week", "weeks"):
        return "W"
    if lower in ("s", "sec", "secs", "second", "seconds"):
        return "s"
    return None


def normalize_timeframe(value: Union[str, int, None]) -> str:
    """Приводить таймфрейм до upstream-формату.

    Хвилини подаються як десяткове число (`60` для 1h, `240` для 4h), день/тиждень/місяць як
    однолітерні коди `D`/`W`/`M` (з множником, якщо він > 1: `3D`).
    Розрізняє регістр для `m` (хвилини) та `M` (місяць). Приймає також
    префіксні форми `m15`, `H4`, `D1`.
    """

    if value is None:
        return "D"
    if isinstance(value, int):
        return _compose_timeframe(value, "m")
    text = str(value).strip()
    if not text:
        return "D"
    if text.isdigit():
        return _compose_timeframe(int(text), "m")
    # Регістр важливий лише для `m`: голе `m` означає 1 хвилину, `M` місяць.
    if text in ("D", "W", "M", "d", "w"):
        return text.upper()
    if text.upper().endswith("S") and text[:-1].isdigit():
        return _compose_timeframe(int(text[:-1]), "s")

    match = _TF_SUFFIX_RE.match(text)
    if match:
        digits, raw_unit = match.groups()
        unit = _canonical_unit(raw_unit)
        if unit is not None:
            return _compose_timeframe(int(digits) if digits else 1, unit)

    match = _TF_PREFIX_RE.match(text)
    if match:
        raw_unit, digits = match.groups()
        unit = _canonical_unit(raw_unit)
        if unit is not None:
            return _compose_timeframe(int(digits), unit)

    raise ValueError(f"Невідомий таймфрейм: {value!r}")


def timeframe_seconds(timeframe: str) -> int:
    """Тривалість канонічного таймфрейму в секундах (місяць ≈ 30 діб)."""

    tf = normalize_timeframe(timeframe)
    if tf.isdigit():
        return int(tf) * 60
    unit = tf[-1]
    count = int(tf[:-1]) if len(tf) > 1 else 1
    if unit == "S":
        return count
    return count * _SECONDS_PER_UNIT[unit]


# ── Ідентифікатори ───────────────────────────────────────────────────────────
def gen_session_id(kind: str = "xs") -> str:
    """Генерує id сесії `<prefix>_<12 символів>`; `kind` означає тип або готовий префікс."""

    prefix = SESSION_PREFIXES.get(kind, kind)
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(_ID_LENGTH))
    return f"{prefix}_{suffix}"


def next_request_id() -> int:
    with _REQUEST_COUNTER_LOCK:
        return next(_REQUEST_COUNTER)


# ── Ключі символів ───────────────────────────────────────────────────────────
def symbol_key(payload: Mapping[str, Any]) -> str:
    """`=` + компактний JSON: форма, яку upstream приймає як ключ символу."""

    return "=" + json.dumps(dict(payload), separators=(",", ":"), ensure_ascii=False)


def quote_symbol_key(symbol: str, session: str = "regular") -> str:
    return symbol_key({"session": session, "symbol": symbol})


def parse_symbol_key(key: str) -> Dict[str, Any]:
    """Зворотне до `symbol_key`; для «голого» тикера повертає `{"symbol": key}`."""

    if isinstance(key, str) and key.startswith("="):
        try:
            parsed = json.loads(key[1:])
        except json.JSONDecodeError:
            return {"symbol": key}
        if isinstance(parsed, dict):
            return parsed
    return {"symbol": key}


# ── Час ──────────────────────────────────────────────────────────────────────
def to_tv_timestamp(value: TimestampLike = None) -> int:
    """Перетворює дату/рядок/число в unix-секунди.

    Числа більші за 1e11 вважаються мілісекундами; `None` означає поточний час.
    """

    if value is None:
        return int(time.time())
    if isinstance(value, dt.datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=dt.timezone.utc)
        return int(value.timestamp())
    if isinstance(value, dt.date):
        return int(dt.datetime(value.year, value.month, value.day, tzinfo=dt.timezone.utc).timestamp())
    if isinstance(value, str):
        stamp = pd.Timestamp(value)
        if stamp.tzinfo is None:
            stamp = stamp.tz_localize("UTC")
        return int(stamp.timestamp())
    number = float(value)
    if number > 1e11:
        return int(number // 1000)
    return int(number)


def backtest_range(
    days: int = 30,
    *,
    from_ts: TimestampLike = None,
    to_ts: TimestampLike = None,
) -> Tuple[int, int]:
    """Діапазон `(from, to)` у секундах: явний `from_ts` або `days` назад від `to_ts`."""

    end = to_tv_timestamp(to_ts)
    if from_ts is not None:
        start = to_tv_timestamp(from_ts)
    else:
        start = end - int(days) * 86_400
    if start > end:
        raise ValueError(f"Початок діапазону {start} пізніше за кінець {end}")
    return start, end


# ── DataFrame ────────────────────────────────────────────────────────────────
def ensure_timestamp_column(
    df: pd.DataFrame,
    *,
    source: str = "time",
    as_index: bool = False,
    logger_obj: Optional[logging.Logger] = None,
) -> pd.DataFrame:
    """Уніфікує колонку `timestamp: datetime64[ns, UTC]` з unix-секунд `source`.

    Видаляє `NaT` і дублікати, стабільно сортує за часом.
    """

    def _log(msg: str) -> None:
        if logger_obj:
            logger_obj.debug("[ensure_timestamp_column] %s", msg)

    if df is None or df.empty:
        _log("DataFrame порожній.")
        return pd.DataFrame()

    if "timestamp" not in df.columns:
        if source not in df.columns:
            _log(f"Відсутня колонка '{source}'.")
            return df
        df = df.copy()
        df["timestamp"] = pd.to_datetime(df[source], unit="s", errors="coerce", utc=True)

    before = len(df)
    df = df.dropna(subset=["timestamp"]).drop_duplicates(subset=["timestamp"])
    removed = before - len(df)
    if removed > 0:
        _log(f"Видалено {removed} рядків (NaT/дублікати).")
    df = df.sort_values("timestamp", kind="stable")
    if as_index:
        df = df.set_index("timestamp")
    return df
