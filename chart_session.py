"""Chart-сесія: resolve символу, серія барів, backfill, study та replay.

Послідовність завантаження ринку:
    1. `resolve_symbol` з ключем символу (ринок, adjustment, валюта, сесія,
       опційно кастомний тип графіка і replay-курсор);
    2. `symbol_resolved` → заповнюємо `infos`, емітимо `symbolLoaded`;
    3. лише після цього `create_series` (перший раз) або `modify_series`.

Після зміни символу чи таймфрейму сховище барів і рядки всіх study очищуються
безпосередньо перед першим новим оновленням з даними, тож `update` ніколи не
змішує серії. Кожен `series_completed` закриває найстаріший надісланий запит
серії або backfill.
"""

from __future__ import annotations

import concurrent.futures
import logging
import threading
from collections import deque
from dataclasses import dataclass, field, replace
from typing import Any, Deque, Dict, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from periods import Period, PeriodsStore
from replay_session import ReplaySession
from sessions import EventHandler, SessionBase, SessionState, settle_future
from study import Indicator, Study, StudyState
from tv_errors import CriticalError, SeriesError, SymbolError
from tv_schema import (
    ADJUSTMENTS,
    CHART_TYPES,
    MARKET_SESSIONS,
    PRICES_SERIES,
    SERIES_TURNAROUND,
    SymbolInfos,
    SymbolInit,
    validate_symbol_init_contract,
)
from utils import next_request_id, normalize_timeframe, symbol_key, to_tv_timestamp

log = logging.getLogger("tv_connector.chart")
if not log.handlers:
    log.addHandler(logging.NullHandler())

DEFAULT_RANGE = 100


@dataclass(frozen=True)
class MarketSpec:
    """Параметри ринку графіка (останній застосований `set_market`/`set_series`)."""

    symbol: str
    timeframe: str = "240"
    range: int = DEFAULT_RANGE
    to: Optional[int] = None
    adjustment: str = "splits"
    backadjustment: bool = False
    session: str = "regular"
    currency: Optional[str] = None
    type: Optional[str] = None
    inputs: Dict[str, Any] = field(default_factory=dict)
    replay: Optional[int] = None

    @classmethod
    def build(cls, symbol: str, **options: Any) -> "MarketSpec":
        if not symbol:
            raise ValueError("Символ не може бути порожнім")
        adjustment = options.get("adjustment", "splits")
        if adjustment not in ADJUSTMENTS:
            raise ValueError(f"Невідомий adjustment: {adjustment}")
        session = options.get("session", "regular")
        if session not in MARKET_SESSIONS:
            raise ValueError(f"Невідома торгова сесія: {session}")
        chart_type = options.get("type")
        if chart_type is not None and chart_type not in CHART_TYPES:
            raise ValueError(f"Невідомий тип графіка: {chart_type}")
        range_ = int(options.get("range", DEFAULT_RANGE))
        if range_ < 1:
            raise ValueError("range має бути >= 1")
        to = options.get("to")
        replay = options.get("replay")
        return cls(
            symbol=symbol,
            timeframe=normalize_timeframe(options.get("timeframe", "240")),
            range=range_,
            to=to_tv_timestamp(to) if to is not None else None,
            adjustment=adjustment,
            backadjustment=bool(options.get("backadjustment", False)),
            session=session,
            currency=options.get("currency"),
            type=chart_type,
            inputs=dict(options.get("inputs") or {}),
            replay=to_tv_timestamp(replay) if replay is not None else None,
        )

    def symbol_init(self) -> SymbolInit:
        init: SymbolInit = {"symbol": self.symbol, "adjustment": self.adjustment}
        if self.backadjustment:
            init["backadjustment"] = "default"
        init["session"] = self.session
        if self.currency:
            init["currency-id"] = self.currency
        validate_symbol_init_contract(init)
        return init

    def resolve_key(self, replay_session_id: Optional[str] = None) -> str:
        init: Dict[str, Any] = dict(self.symbol_init())
        if self.type or replay_session_id:
            complex_init: Dict[str, Any] = {"symbol": init}
            if self.type:
                complex_init["type"] = CHART_TYPES[self.type]
                complex_init["inputs"] = dict(self.inputs)
            if replay_session_id:
                complex_init["replay"] = replay_session_id
            init = complex_init
        return symbol_key(init)

    def range_param(self) -> Any:
        if self.to is not None:
            return ["bar_count", self.to, self.range]
        return self.range


class ChartSession(SessionBase):
    """Графік: один символ, одна серія `$prices`, довільна кількість study.

    Події: `symbolLoaded`, `update`, `error`, `replayPoint`, `seriesLoading`,
    `seriesCompleted`, `replayLoaded`, `replayResolution`, `replayEnd`.
    """

    kind = "chart"
    _HANDLERS = {
        "symbol_resolved": "_on_symbol_resolved",
        "symbol_error": "_on_symbol_error",
        "series_loading": "_on_series_loading",
        "series_completed": "_on_series_completed",
        "series_error": "_on_series_error",
        "critical_error": "_on_critical_error",
        "timescale_update": "_on_data",
        "du": "_on_data",
    }
    _STUDY_HANDLERS = {
        "study_loading": "_on_loading",
        "study_completed": "_on_completed",
        "study_error": "_on_error",
    }

    def __init__(self, client: Any, *, timezone: Optional[str] = None, session_id: Optional[str] = None) -> None:
        self._timezone = timezone
        self._market: Optional[MarketSpec] = None
        self._series_index = 0
        self._series_id: Optional[str] = None
        self._series_created = False
        # Команда серії поточного ринку вже надіслана: дані `$prices` належать їй.
        self._series_live = False
        self._symbol_loaded = False
        self._reset_pending = False
        self._restore_studies = False
        # Надіслані create/modify_series і request_more_data у порядку відправки:
        # кожен `series_completed` закриває найстаріший запис.
        self._series_requests: Deque[List[str]] = deque()
        self._reserved_index = 0
        self._index_lock = threading.Lock()
        self._store = PeriodsStore()
        self._infos: SymbolInfos = {}
        self._studies: Dict[str, Study] = {}
        self._replay: Optional[ReplaySession] = None
        super().__init__(client, session_id=session_id)

    # -- стан ---------------------------------------------------------------
    @property
    def infos(self) -> SymbolInfos:
        return SymbolInfos(**self._infos)

    @property
    def market(self) -> Optional[MarketSpec]:
        return self._market

    @property
    def store(self) -> PeriodsStore:
        return self._store

    @property
    def periods(self) -> List[Period]:
        """Бари від найновішого до найстарішого."""

        return self._store.newest_first()

    @property
    def studies(self) -> List[Study]:
        return list(self._studies.values())

    @property
    def replay(self) -> Optional[ReplaySession]:
        return self._replay

    @property
    def timezone(self) -> Optional[str]:
        return self._timezone

    def to_dataframe(self) -> pd.DataFrame:
        return self._store.to_dataframe()

    # -- підписки -----------------------------------------------------------
    def on_symbol_loaded(self, callback: EventHandler) -> EventHandler:
        return self.events.on("symbolLoaded", callback)

    def on_update(self, callback: EventHandler) -> EventHandler:
        return self.events.on("update", callback)

    def on_replay_point(self, callback: EventHandler) -> EventHandler:
        return self.events.on("replayPoint", callback)

    def on_replay_end(self, callback: EventHandler) -> EventHandler:
        return self.events.on("replayEnd", callback)

    def on_series_completed(self, callback: EventHandler) -> EventHandler:
        return self.events.on("seriesCompleted", callback)

    # -- публічні операції -----------------------------------------------------
    def set_market(self, symbol: str, *, timeout: Optional[float] = None, **options: Any) -> concurrent.futures.Future:
        """Завантажує ринок; future завершується з `infos` на `symbol_resolved`.

        Опції: `timeframe`, `range`, `to`, `adjustment`, `backadjustment`,
        `session`, `currency`, `type`, `inputs`, `replay`.
        """

        spec = MarketSpec.build(symbol, **options)
        with self._index_lock:
            self._reserved_index += 1
            index = self._reserved_index
        return self._submit_op(self._correlation_for(f"ser_{index}"), self._set_market, spec, index, timeout)

    def set_series(
        self,
        timeframe: Any = "240",
        range: int = DEFAULT_RANGE,
        reference: Any = None,
        *,
        timeout: Optional[float] = None,
    ) -> concurrent.futures.Future:
        """Змінює таймфрейм/діапазон для того ж символу; future чекає `series_completed`."""

        tf = normalize_timeframe(timeframe)
        if int(range) < 1:
            raise ValueError("range має бути >= 1")
        to = to_tv_timestamp(reference) if reference is not None else None
        return self._submit_op(f"{self.session_id}:series:{next_request_id()}", self._set_series, tf, int(range), to, timeout)

    def fetch_more(self, count: int = 100, *, timeout: Optional[float] = None) -> concurrent.futures.Future:
        """Догружає `count` старіших барів; future чекає `series_completed`."""

        if count < 1:
            raise ValueError("Кількість барів для backfill має бути >= 1")
        return self._submit_op(f"{self.session_id}:more:{next_request_id()}", self._fetch_more, int(count), timeout)

    def set_timezone(self, timezone: str) -> None:
        self._submit(self._set_timezone, timezone)

    def create_study(self, indicator: Indicator, *, timeout: Optional[float] = None) -> Study:
        study = Study(indicator)
        study.attach(self, timeout=timeout)
        return study

    # -- команди (потік циклу) ------------------------------------------------
    def _set_market(
        self,
        future: concurrent.futures.Future,
        spec: MarketSpec,
        index: int,
        timeout: Optional[float],
    ) -> None:
        if not self._track(future, "resolve", timeout):
            return
        self._market = spec
        self._series_index = index
        self._series_live = False
        self._series_id = f"ser_{self._series_index}"
        self._symbol_loaded = False
        self._reset_pending = True

        replay_id: Optional[str] = None
        if spec.replay is not None:
            replay_id = self._ensure_replay(spec).session_id
        elif self._replay is not None:
            self._replay._delete()

        self._send("resolve_symbol", [self.session_id, self._series_id, spec.resolve_key(replay_id)])

    def _ensure_replay(self, spec: MarketSpec) -> ReplaySession:
        if self._replay is not None and self._replay.is_active:
            replay = self._replay
            replay.symbol_init = spec.symbol_init()
            replay.timeframe = spec.timeframe
            replay.cursor = spec.replay
            replay._send(
                "replay_add_series",
                [replay.session_id, "req_replay_addseries", symbol_key(replay.symbol_init), spec.timeframe],
            )
            replay._send("replay_reset", [replay.session_id, "req_replay_reset", spec.replay])
            return replay
        self._replay = ReplaySession(
            self._client,
            chart=self,
            symbol_init=spec.symbol_init(),
            timeframe=spec.timeframe,
            cursor=spec.replay,
        )
        return self._replay

    def _replay_detached(self, replay: ReplaySession) -> None:
        if self._replay is replay:
            self._replay = None

    def _series_envelope(self) -> Tuple[str, List[Any]]:
        spec = self._market
        assert spec is not None and self._series_id is not None
        method = "modify_series" if self._series_created else "create_series"
        return (
            method,
            [self.session_id, PRICES_SERIES, SERIES_TURNAROUND, self._series_id, spec.timeframe, spec.range_param()],
        )

    def _send_series(self, correlations: Sequence[str] = ()) -> None:
        method, params = self._series_envelope()
        self._series_created = True
        self._series_live = True
        self._series_requests.append(list(correlations))
        self._send(method, params)

    def _set_series(
        self,
        future: concurrent.futures.Future,
        timeframe: str,
        range_: int,
        to: Optional[int],
        timeout: Optional[float],
    ) -> None:
        if self._market is None:
            settle_future(future, error=SeriesError("Спершу потрібно викликати set_market()", session_id=self.session_id))
            return
        if not self._track(future, "series", timeout):
            return
        self._market = replace(self._market, timeframe=timeframe, range=range_, to=to)
        self._reset_pending = True
        self._series_live = False
        if self._symbol_loaded:
            self._send_series([str(future.correlation_id)])  # type: ignore[attr-defined]

    def _fetch_more(self, future: concurrent.futures.Future, count: int, timeout: Optional[float]) -> None:
        if not self._series_created:
            settle_future(future, error=SeriesError("Серія ще не створена", session_id=self.session_id))
            return
        if not self._track(future, "more", timeout):
            return
        self._series_requests.append([str(future.correlation_id)])  # type: ignore[attr-defined]
        self._send("request_more_data", [self.session_id, PRICES_SERIES, count])

    def _set_timezone(self, timezone: str) -> None:
        self._timezone = timezone
        self._send("switch_timezone", [self.session_id, timezone])

    def _attach_study(self, future: concurrent.futures.Future, study: Study, timeout: Optional[float]) -> None:
        if not self._track(future, "study", timeout):
            study.state = StudyState.DELETED
            return
        self._studies[study.study_id] = study
        method, params = study.create_envelope(self.session_id)
        self._send(method, params)

    def _forget_study(self, study_id: str) -> None:
        self._studies.pop(study_id, None)

    # -- життєвий цикл ------------------------------------------------------
    def _create_envelopes(self) -> List[Tuple[str, List[Any]]]:
        envelopes: List[Tuple[str, List[Any]]] = [("chart_create_session", [self.session_id, ""])]
        if self._timezone:
            envelopes.append(("switch_timezone", [self.session_id, self._timezone]))
        return envelopes

    def rehydrate(self) -> None:
        """Перестворює сесію, replay, символ, серію та study в тому ж порядку."""

        for method, params in self._create_envelopes():
            self._send(method, params)
        if self._replay is not None and self._replay.is_active:
            self._replay.rehydrate()
        if self._market is None or self._series_id is None:
            return
        replay_id = self._replay.session_id if self._replay is not None else None
        self._send("resolve_symbol", [self.session_id, self._series_id, self._market.resolve_key(replay_id)])
        self._series_created = False
        self._series_live = False
        # Відповіді старого з'єднання вже не прийдуть.
        self._series_requests.clear()
        if self._symbol_loaded:
            self._send_series(self.pending.ids("series") + self.pending.ids("more"))
            self._send_studies()
        else:
            self._restore_studies = bool(self._studies)

    def _send_studies(self) -> None:
        self._restore_studies = False
        for study in self._studies.values():
            method, params = study.create_envelope(self.session_id)
            self._send(method, params)

    def _delete_envelopes(self) -> List[Tuple[str, List[Any]]]:
        return [("chart_delete_session", [self.session_id])]

    def _delete(self) -> None:
        if self.state is SessionState.DELETED:
            return
        for study in list(self._studies.values()):
            study._delete(self.state is SessionState.ACTIVE)
        if self._replay is not None:
            self._replay._delete()
        super()._delete()

    def detach(self, reason: str = "reconnect") -> None:
        if self._replay is not None:
            self._replay.detach(reason)
        super().detach(reason)

    # -- вхідні методи ------------------------------------------------------
    def _correlation_for(self, series_id: Any) -> str:
        return f"{self.session_id}:{series_id}"

    def _on_symbol_resolved(self, params: List[Any]) -> None:
        series_id = params[1] if len(params) > 1 else None
        infos = params[2] if len(params) > 2 and isinstance(params[2], Mapping) else {}
        correlation = self._correlation_for(series_id)
        if series_id != self._series_id:
            # Відповідь на вже замінений set_market.
            self.pending.resolve(correlation, dict(infos))
            return
        self._infos = dict(infos)
        self._infos["series_id"] = series_id
        if self._symbol_loaded:
            # Повторний resolve після reconnect: лише оновлюємо метадані.
            return
        self._symbol_loaded = True
        self.events.emit("symbolLoaded", self.infos)
        self.pending.resolve(correlation, self.infos)
        self._send_series(self.pending.ids("series") + self.pending.ids("more"))
        if self._restore_studies:
            self._send_studies()

    def _on_symbol_error(self, params: List[Any]) -> None:
        series_id = params[1] if len(params) > 1 else None
        message = params[2] if len(params) > 2 else "symbol_error"
        error = SymbolError(
            f"Не вдалося завантажити символ: {message}",
            session_id=self.session_id,
            correlation_id=self._correlation_for(series_id),
            details=params[2:],
        )
        self.pending.fail(error.correlation_id, error)
        if series_id == self._series_id:
            self._reset_pending = False
        self.events.emit("error", error)

    def _on_series_loading(self, params: List[Any]) -> None:
        self.events.emit("seriesLoading", *params[1:])

    def _on_series_completed(self, params: List[Any]) -> None:
        correlations = self._series_requests.popleft() if self._series_requests else []
        for correlation in correlations:
            self.pending.resolve(correlation, len(self._store))
        self.events.emit("seriesCompleted", *params[1:])

    def _on_series_error(self, params: List[Any]) -> None:
        message = params[3] if len(params) > 3 else (params[2] if len(params) > 2 else "series_error")
        # Після помилки серії жоден з надісланих запитів уже не завершиться.
        queued = [cid for request in self._series_requests for cid in request]
        correlations = list(dict.fromkeys(queued + self.pending.ids("series") + self.pending.ids("more")))
        self._series_requests.clear()
        error = SeriesError(
            f"Помилка серії: {message}",
            session_id=self.session_id,
            correlation_id=correlations[0] if correlations else None,
            details=params[1:],
        )
        for correlation in correlations:
            self.pending.fail(correlation, error)
        self.events.emit("error", error)

    def _on_critical_error(self, params: List[Any]) -> None:
        name = params[1] if len(params) > 1 else None
        description = params[2] if len(params) > 2 else None
        study = self._studies.get(name) if isinstance(name, str) else None
        if study is not None:
            study._on_critical(name, description)
            return
        error = CriticalError(
            f"Критична помилка графіка: {name} {description}",
            session_id=self.session_id,
            details=params[1:],
        )
        self.pending.fail_all(error)
        self.events.emit("error", error)
        self._delete()

    def handle(self, envelope: Any) -> bool:
        handler = self._STUDY_HANDLERS.get(envelope.method)
        if handler is None:
            return super().handle(envelope)
        study_id = envelope.params[1] if len(envelope.params) > 1 else None
        study = self._studies.get(study_id)
        if study is None:
            log.debug("[%s] %s для невідомого study %s", self.session_id, envelope.method, study_id)
            return False
        getattr(study, handler)(envelope.params)
        return True

    def _on_data(self, params: List[Any]) -> None:
        payload = params[1] if len(params) > 1 else None
        if not isinstance(payload, Mapping):
            return
        if not self._series_live:
            # Дані попередньої серії до надсилання create/modify_series.
            return
        if self._reset_pending and self._carries_rows(payload):
            self._store.clear()
            for study in self._studies.values():
                study.store.clear()
            self._reset_pending = False

        changes: List[str] = []
        for key, item in payload.items():
            if not isinstance(item, Mapping):
                continue
            if key == PRICES_SERIES:
                if self._apply_prices(item):
                    changes.append(key)
                continue
            study = self._studies.get(key)
            if study is not None:
                study._on_data(item)
        if changes:
            self.events.emit("update", changes)

    def _carries_rows(self, payload: Mapping[str, Any]) -> bool:
        """Чи є в оновленні бари серії або рядки хоча б одного study."""

        for key, item in payload.items():
            if not isinstance(item, Mapping):
                continue
            rows = item.get("s") if key == PRICES_SERIES else item.get("st") if key in self._studies else None
            if isinstance(rows, list) and rows:
                return True
        return False

    def _apply_prices(self, item: Mapping[str, Any]) -> bool:
        rows = item.get("s")
        if not isinstance(rows, list) or not rows:
            return False
        return self._store.merge_values(rows).changed
