"""History-сесія: разові глибокі вибірки барів та бектест стратегій.

Кожен запит має клієнтський `request_id` (процесний лічильник, тому
паралельні запити і сесії ніколи не перетинаються). Відповідь збирається з
проміжних `du` і фінального `request_data`; future запиту завершується
повним упорядкованим списком барів або `HistoryError` з тим самим id.
"""

from __future__ import annotations

import concurrent.futures
import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from periods import Period, PeriodsStore
from sessions import EventHandler, SessionBase, new_future, settle_future
from tv_errors import HistoryError
from tv_schema import (
    HISTORY_SERVER,
    STRATEGY_SCRIPT_TYPE,
    HistoryRequestPayload,
    StrategyReport,
    validate_symbol_init_contract,
)
from utils import next_request_id, normalize_timeframe, symbol_key, to_tv_timestamp

log = logging.getLogger("tv_connector.history")
if not log.handlers:
    log.addHandler(logging.NullHandler())


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class HistoryResult:
    request_id: int
    periods: List[Period]
    report: Optional[StrategyReport] = None


@dataclass
class HistoryRequest:
    request_id: int
    symbol: str
    timeframe: str
    from_ts: int
    to_ts: int
    adjustment: str = "splits"
    currency: str = "USD"
    session: str = "regular"
    script_id: str = STRATEGY_SCRIPT_TYPE
    script_text: Optional[str] = None
    # True: future повертає лише список барів (`get_historical_data`).
    periods_only: bool = False
    status: RequestStatus = RequestStatus.PENDING
    # Бари в польоті; після завершення переносяться в сесію і звільняються.
    store: PeriodsStore = field(default_factory=PeriodsStore)
    report: Optional[StrategyReport] = None

    @property
    def in_flight(self) -> bool:
        return self.status in (RequestStatus.PENDING, RequestStatus.STREAMING)

    def symbol_payload(self) -> HistoryRequestPayload:
        payload: HistoryRequestPayload = {
            "adjustment": self.adjustment,
            "currency-id": self.currency,
            "session": self.session,
            "symbol": self.symbol.upper(),
        }
        validate_symbol_init_contract(payload)
        return payload

    def envelope_params(self, session_id: str) -> List[Any]:
        params: List[Any] = [
            session_id,
            self.request_id,
            symbol_key(self.symbol_payload()),
            self.timeframe,
            0,
            {"from_to": {"from": self.from_ts, "to": self.to_ts}},
            self.script_id,
        ]
        if self.script_text:
            params.append({"text": self.script_text})
        return params

    def result(self) -> Any:
        periods = self.store.ascending()
        if self.periods_only:
            return periods
        return HistoryResult(self.request_id, periods, self.report)


def _parse_report(data: Mapping[str, Any]) -> Optional[StrategyReport]:
    ns = data.get("ns")
    raw = ns.get("d") if isinstance(ns, Mapping) else None
    if not isinstance(raw, str) or not raw:
        return None
    parsed = json.loads(raw)
    report = parsed.get("data", {}).get("report") if isinstance(parsed, Mapping) else None
    return StrategyReport(**report) if isinstance(report, Mapping) else None


def _series_rows(data: Any) -> List[Any]:
    if not isinstance(data, Mapping):
        return []
    series = data.get("series")
    if isinstance(series, Mapping) and isinstance(series.get("data"), list):
        return series["data"]
    rows = data.get("s")
    return rows if isinstance(rows, list) else []


class HistorySession(SessionBase):
    """Сесія deep-history. Події: `data`, `loaded`, `completed`, `error`."""

    kind = "history"
    _HANDLERS = {
        "request_data": "_on_request_data",
        "du": "_on_partial",
        "request_error": "_on_request_error",
        "symbol_error": "_on_request_error",
        "critical_error": "_on_critical_error",
    }

    def __init__(self, client: Any, *, session_id: Optional[str] = None) -> None:
        self._requests: Dict[int, HistoryRequest] = {}
        self._periods = PeriodsStore()
        self._strategy_report: Optional[StrategyReport] = None
        server = getattr(getattr(client, "config", None), "server", HISTORY_SERVER)
        if server != HISTORY_SERVER:
            log.warning("History-сесія на сервері '%s'; очікується '%s'.", server, HISTORY_SERVER)
        super().__init__(client, session_id=session_id)

    # -- стан ---------------------------------------------------------------
    @property
    def periods(self) -> List[Period]:
        """Бари всіх завершених запитів, від найновішого до найстарішого."""

        return self._periods.newest_first()

    @property
    def strategy_report(self) -> Optional[StrategyReport]:
        return self._strategy_report

    def request(self, request_id: int) -> Optional[HistoryRequest]:
        return self._requests.get(request_id)

    def on_data(self, callback: EventHandler) -> EventHandler:
        return self.events.on("data", callback)

    def on_loaded(self, callback: EventHandler) -> EventHandler:
        return self.events.on("loaded", callback)

    def on_completed(self, callback: EventHandler) -> EventHandler:
        return self.events.on("completed", callback)

    # -- публічні операції ----------------------------------------------------
    def get_historical_data(
        self,
        symbol: str,
        timeframe: Any,
        from_ts: Any,
        to_ts: Any,
        script_text: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
    ) -> concurrent.futures.Future:
        """Future з повним упорядкованим (від старого до нового) списком `Period`."""

        return self.request_history_data(
            symbol,
            timeframe,
            from_ts,
            to_ts,
            script_text=script_text,
            timeout=timeout,
            periods_only=True,
        )

    def request_history_data(
        self,
        symbol: str,
        timeframe: Any,
        from_ts: Any,
        to_ts: Any,
        *,
        adjustment: str = "splits",
        currency: str = "USD",
        session: str = "regular",
        script_id: str = STRATEGY_SCRIPT_TYPE,
        script_text: Optional[str] = None,
        timeout: Optional[float] = None,
        periods_only: bool = False,
    ) -> concurrent.futures.Future:
        if not symbol:
            raise ValueError("Символ обов'язковий")
        if from_ts is None or to_ts is None:
            raise ValueError("Потрібні обидві межі діапазону: from_ts і to_ts")
        start, end = to_tv_timestamp(from_ts), to_tv_timestamp(to_ts)
        if start > end:
            raise ValueError(f"Початок діапазону {start} пізніше за кінець {end}")
        request = HistoryRequest(
            request_id=next_request_id(),
            symbol=symbol,
            timeframe=normalize_timeframe(timeframe),
            from_ts=start,
            to_ts=end,
            adjustment=adjustment,
            currency=currency,
            session=session,
            script_id=script_id,
            script_text=script_text,
            periods_only=periods_only,
        )
        # Ключ символу перевіряється до відправки, в потоці виклику.
        request.symbol_payload()
        future = new_future(str(request.request_id))
        if not self.is_active:
            settle_future(future, error=HistoryError("Сесія не активна", request_id=request.request_id, session_id=self.session_id))
            return future
        self._client.dispatch(self._start_request, future, request, timeout)
        return future

    def backtest_strategy(
        self,
        symbol: str,
        timeframe: Any,
        from_ts: Any,
        to_ts: Any,
        script_text: str,
        *,
        script_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> concurrent.futures.Future:
        """Бектест pine-стратегії; future → `HistoryResult` зі звітом."""

        if not script_text:
            raise ValueError("Для бектесту потрібен текст стратегії")
        if timeout is None:
            timeout = self._client.config.history_timeout * 2
        return self.request_history_data(
            symbol,
            timeframe,
            from_ts,
            to_ts,
            script_id=script_id or STRATEGY_SCRIPT_TYPE,
            script_text=script_text,
            timeout=timeout,
        )

    def clear_data(self) -> None:
        self._submit(self._clear_data)

    # -- потік циклу --------------------------------------------------------
    def _start_request(self, future: concurrent.futures.Future, request: HistoryRequest, timeout: Optional[float]) -> None:
        if timeout is None:
            timeout = self._client.config.history_timeout
        if not self._track(future, "history", timeout):
            return
        self._requests[request.request_id] = request
        self._send("request_history_data", request.envelope_params(self.session_id))

    def _clear_data(self) -> None:
        self._expire_orphans()
        for request_id in [rid for rid, request in self._requests.items() if not request.in_flight]:
            self._requests.pop(request_id, None)
        self._periods.clear()
        self._strategy_report = None

    def _create_envelopes(self) -> List[Tuple[str, List[Any]]]:
        return [("history_create_session", [self.session_id])]

    def rehydrate(self) -> None:
        """Перестворює сесію і повторно надсилає незавершені запити."""

        super().rehydrate()
        self._expire_orphans()
        for request in self._requests.values():
            if not request.in_flight:
                continue
            request.store.clear()
            request.status = RequestStatus.PENDING
            self._send("request_history_data", request.envelope_params(self.session_id))

    def _delete_envelopes(self) -> List[Tuple[str, List[Any]]]:
        return [("history_delete_session", [self.session_id])]

    # -- вхідні методи ------------------------------------------------------
    def _expire_orphans(self) -> None:
        """Запит без очікуваної операції (таймаут або скасування) вже не в польоті."""

        for request in self._requests.values():
            if request.in_flight and str(request.request_id) not in self.pending:
                request.status = RequestStatus.FAILED
                request.store.clear()

    def _lookup(self, request_id: Any) -> Optional[HistoryRequest]:
        try:
            key = int(request_id)
        except (TypeError, ValueError):
            return None
        self._expire_orphans()
        request = self._requests.get(key)
        if request is None or not request.in_flight:
            if self.pending.is_abandoned(key):
                log.debug("[%s] Пізня відповідь на запит %s відкинута.", self.session_id, key)
            return None
        return request

    def _on_partial(self, params: List[Any]) -> None:
        request = self._lookup(params[1] if len(params) > 1 else None)
        if request is None:
            return
        rows = _series_rows(params[2] if len(params) > 2 else None)
        request.status = RequestStatus.STREAMING
        if rows and request.store.merge_values(rows).changed:
            self.events.emit("data", {"type": "periods", "request_id": request.request_id, "count": len(request.store)})

    def _on_request_data(self, params: List[Any]) -> None:
        request = self._lookup(params[1] if len(params) > 1 else None)
        if request is None:
            return
        data = params[2] if len(params) > 2 and isinstance(params[2], Mapping) else {}
        rows = _series_rows(data)
        if rows:
            request.store.merge_values(rows)
        try:
            request.report = _parse_report(data)
        except json.JSONDecodeError as exc:
            self._fail_request(request, HistoryError(
                f"Некоректний звіт стратегії: {exc}",
                request_id=request.request_id,
                session_id=self.session_id,
            ))
            return

        request.status = RequestStatus.COMPLETED
        if request.report is not None:
            self._strategy_report = request.report
            self.events.emit("data", {"type": "report", "request_id": request.request_id, "report": request.report})
        count = len(request.store)
        self.pending.resolve(request.request_id, request.result())
        self._periods.merge(request.store)
        request.store.clear()
        self.events.emit("loaded", {"request_id": request.request_id, "count": count})
        if not any(item.in_flight for item in self._requests.values()):
            self.events.emit("completed")

    def _fail_request(self, request: HistoryRequest, error: HistoryError) -> None:
        request.status = RequestStatus.FAILED
        request.store.clear()
        self.pending.fail(request.request_id, error)
        self.events.emit("error", error)

    def _on_request_error(self, params: List[Any]) -> None:
        request = self._lookup(params[1] if len(params) > 1 else None)
        message = params[2] if len(params) > 2 else "request_error"
        if request is None:
            self.events.emit("error", HistoryError(f"Помилка history: {message}", session_id=self.session_id, details=params[1:]))
            return
        self._fail_request(
            request,
            HistoryError(
                f"Запит {request.request_id} завершився помилкою: {message}",
                request_id=request.request_id,
                session_id=self.session_id,
                details=params[2:],
            ),
        )

    def _on_critical_error(self, params: List[Any]) -> None:
        name = params[1] if len(params) > 1 else None
        description = params[2] if len(params) > 2 else None
        for request in self._requests.values():
            if request.in_flight:
                request.status = RequestStatus.FAILED
                request.store.clear()
                self.pending.fail(
                    request.request_id,
                    HistoryError(
                        f"Критична помилка history: {name} {description}",
                        request_id=request.request_id,
                        session_id=self.session_id,
                    ),
                )
        self.events.emit(
            "error",
            HistoryError(f"Критична помилка history: {name} {description}", session_id=self.session_id, details=params[1:]),
        )
        self._delete()
