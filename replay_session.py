"""Replay-сесія: псевдочасовий курсор, що програє минулий ринок у графік."""

from __future__ import annotations

import concurrent.futures
import logging
from typing import Any, List, Optional, Tuple

from sessions import SessionBase, settle_future
from tv_errors import ReplayError
from tv_schema import REPLAY_ADD_SERIES_REQUEST, SymbolInit
from utils import next_request_id, symbol_key, to_tv_timestamp

log = logging.getLogger("tv_connector.replay")
if not log.handlers:
    log.addHandler(logging.NullHandler())

DEFAULT_REPLAY_INTERVAL_MS = 1000


class ReplaySession(SessionBase):
    """Курсор replay, прив'язаний до графіка.

    Операції `start/step/pause/stop` повертають future, що завершується на
    `replay_ok` з відповідним request id. Події `replay_point`,
    `replay_resolutions`, `replay_data_end`, `replay_instance_id`
    пересилаються графіку.
    """

    kind = "replay"
    _HANDLERS = {
        "replay_ok": "_on_ok",
        "replay_error": "_on_error",
        "replay_instance_id": "_on_instance_id",
        "replay_point": "_on_point",
        "replay_resolutions": "_on_resolutions",
        "replay_data_end": "_on_data_end",
    }

    def __init__(
        self,
        client: Any,
        *,
        chart: Any = None,
        symbol_init: Optional[SymbolInit] = None,
        timeframe: str = "D",
        cursor: Optional[int] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.chart = chart
        self.symbol_init: SymbolInit = SymbolInit(**(symbol_init or {}))
        self.timeframe = timeframe
        self.cursor = cursor
        self.instance_id: Optional[str] = None
        super().__init__(
            client,
            session_id=session_id,
            owner=chart.session_id if chart is not None else None,
        )

    # -- публічне API -------------------------------------------------------
    def on_point(self, callback: Any) -> Any:
        return self.events.on("replayPoint", callback)

    def start(
        self,
        timestamp: Any = None,
        *,
        interval_ms: int = DEFAULT_REPLAY_INTERVAL_MS,
        timeout: Optional[float] = None,
    ) -> concurrent.futures.Future:
        """Запускає автопрогравання; з `timestamp` спочатку переставляє курсор."""

        ts = to_tv_timestamp(timestamp) if timestamp is not None else None
        return self._submit_op(self._request_id(), self._start, ts, int(interval_ms), timeout)

    def step(self, count: int = 1, *, timeout: Optional[float] = None) -> concurrent.futures.Future:
        if count < 1:
            raise ValueError("Кількість кроків replay має бути >= 1")
        return self._submit_op(self._request_id(), self._command, "replay_step", [int(count)], timeout)

    def pause(self, *, timeout: Optional[float] = None) -> concurrent.futures.Future:
        return self._submit_op(self._request_id(), self._command, "replay_stop", [], timeout)

    def reset(self, timestamp: Any, *, timeout: Optional[float] = None) -> concurrent.futures.Future:
        ts = to_tv_timestamp(timestamp)
        return self._submit_op(self._request_id(), self._reset, ts, timeout)

    def stop(self) -> concurrent.futures.Future:
        """Зупиняє програвання і знищує replay-сесію; графік лишається на останньому стані."""

        return self._submit_op(self._request_id(), self._stop)

    # -- потік циклу --------------------------------------------------------
    def _request_id(self) -> str:
        return f"req_{next_request_id()}"

    def _command(self, future: concurrent.futures.Future, method: str, args: List[Any], timeout: Optional[float]) -> None:
        if not self._track(future, method, timeout):
            return
        self._send(method, [self.session_id, future.correlation_id, *args])  # type: ignore[attr-defined]

    def _start(self, future: concurrent.futures.Future, ts: Optional[int], interval_ms: int, timeout: Optional[float]) -> None:
        if not self._track(future, "replay_start", timeout):
            return
        if ts is not None:
            self.cursor = ts
            self._send("replay_reset", [self.session_id, f"{future.correlation_id}_reset", ts])  # type: ignore[attr-defined]
        self._send("replay_start", [self.session_id, future.correlation_id, interval_ms])  # type: ignore[attr-defined]

    def _stop(self, future: concurrent.futures.Future) -> None:
        self._send("replay_stop", [self.session_id, future.correlation_id])  # type: ignore[attr-defined]
        self._delete()
        settle_future(future, result=future.correlation_id)  # type: ignore[attr-defined]

    def _reset(self, future: concurrent.futures.Future, ts: int, timeout: Optional[float]) -> None:
        if not self._track(future, "replay_reset", timeout):
            return
        self.cursor = ts
        self._send("replay_reset", [self.session_id, future.correlation_id, ts])  # type: ignore[attr-defined]

    def _create_envelopes(self) -> List[Tuple[str, List[Any]]]:
        envelopes: List[Tuple[str, List[Any]]] = [
            ("replay_create_session", [self.session_id]),
            (
                "replay_add_series",
                [self.session_id, REPLAY_ADD_SERIES_REQUEST, symbol_key(self.symbol_init), self.timeframe],
            ),
        ]
        if self.cursor is not None:
            envelopes.append(("replay_reset", [self.session_id, "req_replay_reset", self.cursor]))
        return envelopes

    def _delete_envelopes(self) -> List[Tuple[str, List[Any]]]:
        return [("replay_delete_session", [self.session_id])]

    def _delete(self) -> None:
        super()._delete()
        if self.chart is not None:
            self.chart._replay_detached(self)

    # -- вхідні методи ------------------------------------------------------
    def _on_ok(self, params: List[Any]) -> None:
        request_id = params[1] if len(params) > 1 else None
        self.pending.resolve(request_id, request_id)

    def _on_error(self, params: List[Any]) -> None:
        request_id = params[1] if len(params) > 1 else None
        message = params[2] if len(params) > 2 else "replay_error"
        error = ReplayError(
            f"Помилка replay: {message}",
            session_id=self.session_id,
            correlation_id=request_id,
            details=params[2:],
        )
        self.pending.fail(request_id, error)
        self.events.emit("error", error)
        if self.chart is not None:
            self.chart.events.emit("error", error)

    def _on_instance_id(self, params: List[Any]) -> None:
        self.instance_id = params[1] if len(params) > 1 else None
        self.events.emit("replayLoaded", self.instance_id)
        if self.chart is not None:
            self.chart.events.emit("replayLoaded", self.instance_id)

    def _on_point(self, params: List[Any]) -> None:
        point = params[1] if len(params) > 1 else None
        if isinstance(point, (int, float)):
            self.cursor = int(point)
        self.events.emit("replayPoint", point)
        if self.chart is not None:
            self.chart.events.emit("replayPoint", point)

    def _on_resolutions(self, params: List[Any]) -> None:
        payload = params[1:]
        self.events.emit("replayResolution", *payload)
        if self.chart is not None:
            self.chart.events.emit("replayResolution", *payload)

    def _on_data_end(self, params: List[Any]) -> None:
        self.events.emit("replayEnd")
        if self.chart is not None:
            self.chart.events.emit("replayEnd")
