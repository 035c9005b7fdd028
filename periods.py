"""Впорядковані сховища барів графіка та рядків індикаторів.

Бар ідентифікується часом відкриття (unix-секунди). Сховище завжди строго
відсортоване за часом без дублікатів:
    • новіший за найновіший бар додається в кінець;
    • бар із часом найновішого замінює його (живе оновлення);
    • старіший за найстаріший (backfill) вставляється на початок у порядку часу;
    • бар усередині діапазону замінює наявний або вставляється на своє місце.
"""

from __future__ import annotations

import bisect
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Generic, Iterable, Iterator, List, Mapping, Optional, Sequence, TypeVar

import pandas as pd

from tv_schema import SeriesRowJson
from utils import ensure_timestamp_column

log = logging.getLogger("tv_connector.periods")
if not log.handlers:
    log.addHandler(logging.NullHandler())

STUDY_TIME_KEY = "$time"
_BASE_FIELDS = ("open", "high", "low", "close", "volume")

RowT = TypeVar("RowT")


def _as_number(value: Any) -> float:
    if value is None:
        return math.nan
    try:
        return float(value)
    except (TypeError, ValueError):
        return math.nan


@dataclass
class Period:
    """Один бар серії `$prices`."""

    time: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    # Поля кастомних типів графіка (Renko, Kagi, ...) поверх базового OHLCV.
    extra: Dict[str, float] = field(default_factory=dict)

    @classmethod
    def from_values(cls, values: Sequence[Any]) -> "Period":
        """`v = [time, open, high, low, close, volume, ...]` з `timescale_update`."""

        if len(values) < 5:
            raise ValueError(f"Замало значень для бару: {values!r}")
        padded = list(values) + [0.0] * max(0, 6 - len(values))
        extra = {f"field_{idx}": _as_number(item) for idx, item in enumerate(values[6:], start=6)}
        return cls(
            time=int(padded[0]),
            open=_as_number(padded[1]),
            high=_as_number(padded[2]),
            low=_as_number(padded[3]),
            close=_as_number(padded[4]),
            volume=_as_number(padded[5]) if padded[5] is not None else 0.0,
            extra=extra,
        )

    def to_dict(self) -> Dict[str, Any]:
        row: Dict[str, Any] = {"time": self.time}
        for name in _BASE_FIELDS:
            row[name] = getattr(self, name)
        row.update(self.extra)
        return row


@dataclass
class MergeResult:
    """Підсумок одного злиття в сховище."""

    appended: int = 0
    replaced: int = 0
    prepended: int = 0
    inserted: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.appended or self.replaced or self.prepended or self.inserted)


class _OrderedStore(Generic[RowT]):
    """Відсортований за часом масив рядків із бінарним пошуком по `_times`."""

    def __init__(self) -> None:
        self._times: List[int] = []
        self._rows: List[RowT] = []

    def __len__(self) -> int:
        return len(self._rows)

    def __iter__(self) -> Iterator[RowT]:
        return iter(self._rows)

    def __bool__(self) -> bool:
        return bool(self._rows)

    def clear(self) -> None:
        self._times.clear()
        self._rows.clear()

    def times(self) -> List[int]:
        return list(self._times)

    def ascending(self) -> List[RowT]:
        return list(self._rows)

    def newest_first(self) -> List[RowT]:
        return list(reversed(self._rows))

    def oldest(self) -> Optional[RowT]:
        return self._rows[0] if self._rows else None

    def newest(self) -> Optional[RowT]:
        return self._rows[-1] if self._rows else None

    @property
    def oldest_time(self) -> Optional[int]:
        return self._times[0] if self._times else None

    @property
    def newest_time(self) -> Optional[int]:
        return self._times[-1] if self._times else None

    def get(self, ts: int) -> Optional[RowT]:
        idx = bisect.bisect_left(self._times, ts)
        if idx < len(self._times) and self._times[idx] == ts:
            return self._rows[idx]
        return None

    def upsert(self, ts: int, row: RowT, result: Optional[MergeResult] = None) -> MergeResult:
        result = result if result is not None else MergeResult()
        times = self._times
        if not times or ts > times[-1]:
            times.append(ts)
            self._rows.append(row)
            result.appended += 1
            return result
        if ts == times[-1]:
            self._rows[-1] = row
            result.replaced += 1
            return result
        idx = bisect.bisect_left(times, ts)
        if idx < len(times) and times[idx] == ts:
            self._rows[idx] = row
            result.replaced += 1
            return result
        times.insert(idx, ts)
        self._rows.insert(idx, row)
        if idx == 0:
            result.prepended += 1
        else:
            result.inserted += 1
        return result


class PeriodsStore(_OrderedStore[Period]):
    """Сховище барів графіка (`$prices`)."""

    def merge(self, periods: Iterable[Period]) -> MergeResult:
        result = MergeResult()
        for period in periods:
            self.upsert(period.time, period, result)
        return result

    def merge_values(self, rows: Iterable[SeriesRowJson]) -> MergeResult:
        """Зливає сирі рядки `[{i, v: [...]}, ...]` з `timescale_update`/`du`."""

        parsed: List[Period] = []
        for row in rows:
            values = row.get("v") if isinstance(row, Mapping) else None
            if not isinstance(values, (list, tuple)):
                continue
            try:
                parsed.append(Period.from_values(values))
            except (TypeError, ValueError) as exc:
                log.debug("Пропущено бар %r: %s", row, exc)
        return self.merge(parsed)

    def to_dataframe(self) -> pd.DataFrame:
        frame = pd.DataFrame([period.to_dict() for period in self._rows])
        return ensure_timestamp_column(frame, source="time", as_index=True)


class StudyPeriodsStore(_OrderedStore[Dict[str, Any]]):
    """Рядки індикатора: `{"$time": ts, <plot>: value, ...}`, вирівняні з графіком."""

    def merge_values(
        self,
        rows: Iterable[SeriesRowJson],
        plot_names: Optional[Mapping[int, str]] = None,
    ) -> MergeResult:
        """`v[0]` містить час бару, `v[i]` значення плоту `plot_names[i-1]` або `plot_{i-1}`."""

        result = MergeResult()
        names = plot_names or {}
        for row in rows:
            values = row.get("v") if isinstance(row, Mapping) else None
            if not isinstance(values, (list, tuple)) or not values:
                continue
            try:
                ts = int(values[0])
            except (TypeError, ValueError):
                continue
            record: Dict[str, Any] = {STUDY_TIME_KEY: ts}
            for idx, value in enumerate(values[1:]):
                record[names.get(idx, f"plot_{idx}")] = value
            self.upsert(ts, record, result)
        return result

    def to_dataframe(self) -> pd.DataFrame:
        frame = pd.DataFrame(self._rows)
        return ensure_timestamp_column(frame, source=STUDY_TIME_KEY, as_index=True)

