"""Базові будівельні блоки сесій: fan-out подій, pending-операції, реєстр.

Модель потоків:
    • публічні методи сесій можна викликати з будь-якого потоку, вони лише
      ставлять команду в чергу клієнта (`client.dispatch`);
    • стан сесії, `PendingOps` та реєстр змінюються тільки в потоці циклу
      клієнта, тому власних блокувань тут немає;
    • обробники подій виконуються в потоці циклу через чергу доставки клієнта.

Контракт «моста» до клієнта (реалізують `connector.StreamClient` і тестовий
`FakeClient`): `send`, `dispatch`, `call_later`, `deliver`,
`register_session`, `unregister_session`, атрибут `config`.
"""

from __future__ import annotations

import concurrent.futures
import enum
import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from tv_errors import Detached, HandlerError, OperationTimeout
from tv_protocol import Envelope
from utils import gen_session_id

log = logging.getLogger("tv_connector.sessions")
if not log.handlers:
    log.addHandler(logging.NullHandler())

EventHandler = Callable[..., Any]
DeliverFn = Callable[[str, Callable[[], None]], None]

ABANDONED_MEMORY = 1024
UNKNOWN_METHOD_LOG_INTERVAL_SECONDS = 60.0
_UNKNOWN_METHOD_LOG_STATE: Dict[str, float] = {}


def _should_log_unknown(method: str) -> bool:
    now = time.monotonic()
    last = _UNKNOWN_METHOD_LOG_STATE.get(method)
    if last is not None and now - last < UNKNOWN_METHOD_LOG_INTERVAL_SECONDS:
        return False
    _UNKNOWN_METHOD_LOG_STATE[method] = now
    return True


# ── Fan-out подій ────────────────────────────────────────────────────────────
class EventEmitter:
    """Іменовані списки обробників + `on_event` для трасування всіх подій.

    Обробники викликаються в порядку реєстрації. Виняток в одному обробнику
    не зупиняє наступні: він логується і повторно емітиться як `HandlerError`
    у канал `error` (помилки всередині обробників `error` лише логуються).
    """

    def __init__(self, key: str, *, deliver: Optional[DeliverFn] = None) -> None:
        self.key = key
        self._deliver = deliver
        self._handlers: Dict[str, List[EventHandler]] = {}
        self._event_handlers: List[EventHandler] = []

    def bind_delivery(self, deliver: Optional[DeliverFn]) -> None:
        self._deliver = deliver

    def on(self, event: str, callback: EventHandler) -> EventHandler:
        self._handlers.setdefault(event, []).append(callback)
        return callback

    def off(self, event: str, callback: EventHandler) -> None:
        handlers = self._handlers.get(event)
        if handlers and callback in handlers:
            handlers.remove(callback)

    def on_event(self, callback: EventHandler) -> EventHandler:
        self._event_handlers.append(callback)
        return callback

    def has_handlers(self, event: str) -> bool:
        return bool(self._handlers.get(event)) or bool(self._event_handlers)

    def emit(self, event: str, *args: Any) -> None:
        if self._deliver is None:
            self._fire(event, args)
            return
        self._deliver(self.key, lambda: self._fire(event, args))

    def _fire(self, event: str, args: Tuple[Any, ...]) -> None:
        handlers = list(self._handlers.get(event, ()))
        if event == "error" and not handlers:
            log.warning("[%s] Помилка без обробника: %s", self.key, args[0] if args else None)
        for callback in handlers:
            self._invoke(event, callback, args)
        for callback in list(self._event_handlers):
            self._invoke(event, callback, (event,) + tuple(args))

    def _invoke(self, event: str, callback: EventHandler, args: Tuple[Any, ...]) -> None:
        try:
            callback(*args)
        except Exception as exc:  # noqa: BLE001 - межа користувацького коду
            log.exception("[%s] Обробник події '%s' кинув виняток.", self.key, event)
            if event != "error":
                self._fire("error", (HandlerError(event, exc),))


# ── Pending-операції ─────────────────────────────────────────────────────────
class PendingOp:
    __slots__ = ("correlation_id", "kind", "future", "timer", "created_at")

    def __init__(self, correlation_id: str, kind: str, future: concurrent.futures.Future) -> None:
        self.correlation_id = correlation_id
        self.kind = kind
        self.future = future
        self.timer: Any = None
        self.created_at = time.monotonic()


def new_future(correlation_id: str) -> concurrent.futures.Future:
    future: concurrent.futures.Future = concurrent.futures.Future()
    future.correlation_id = correlation_id  # type: ignore[attr-defined]
    return future


def settle_future(future: concurrent.futures.Future, *, result: Any = None, error: Optional[BaseException] = None) -> bool:
    if future.done():
        return False
    try:
        if error is not None:
            future.set_exception(error)
        else:
            future.set_result(result)
    except concurrent.futures.InvalidStateError:
        # Викликач скасував future з іншого потоку між перевіркою і встановленням.
        return False
    return True


class PendingOps:
    """Очікувані відповіді сесії, проіндексовані correlation id.

    Таймаут завершує future з `OperationTimeout` і запам'ятовує id як
    «покинутий»: пізня відповідь на нього відкидається. Скасування future
    викликачем прибирає операцію, але підписку upstream не знімає.
    """

    def __init__(self, client: Any, owner: str) -> None:
        self._client = client
        self._owner = owner
        self._ops: "OrderedDict[str, PendingOp]" = OrderedDict()
        self._abandoned: "OrderedDict[str, None]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._ops)

    def __contains__(self, correlation_id: object) -> bool:
        return correlation_id in self._ops

    def track(
        self,
        future: concurrent.futures.Future,
        kind: str,
        *,
        timeout: Optional[float],
    ) -> bool:
        """Реєструє future (викликається в потоці циклу). False, якщо вже скасований."""

        correlation_id = str(getattr(future, "correlation_id"))
        if future.done():
            return False
        op = PendingOp(correlation_id, kind, future)
        self._ops[correlation_id] = op
        if timeout is not None and timeout > 0:
            op.timer = self._client.call_later(timeout, self._expire, correlation_id)
        future.add_done_callback(lambda fut, cid=correlation_id: self._on_done(cid, fut))
        return True

    def _on_done(self, correlation_id: str, future: concurrent.futures.Future) -> None:
        if future.cancelled():
            self._client.dispatch(self._discard, correlation_id)

    def _discard(self, correlation_id: str) -> None:
        op = self._ops.pop(correlation_id, None)
        if op is not None and op.timer is not None:
            op.timer.cancel()

    def _expire(self, correlation_id: str) -> None:
        op = self._ops.pop(correlation_id, None)
        if op is None:
            return
        self._remember_abandoned(correlation_id)
        log.debug("[%s] Операцію %s (%s) завершено за таймаутом.", self._owner, correlation_id, op.kind)
        settle_future(
            op.future,
            error=OperationTimeout(
                f"Операція {op.kind} ({correlation_id}) перевищила таймаут",
                correlation_id=correlation_id,
            ),
        )

    def _remember_abandoned(self, correlation_id: str) -> None:
        self._abandoned[correlation_id] = None
        while len(self._abandoned) > ABANDONED_MEMORY:
            self._abandoned.popitem(last=False)

    def is_abandoned(self, correlation_id: Any) -> bool:
        return str(correlation_id) in self._abandoned

    def pop(self, correlation_id: Any) -> Optional[PendingOp]:
        op = self._ops.pop(str(correlation_id), None)
        if op is not None and op.timer is not None:
            op.timer.cancel()
        return op

    def resolve(self, correlation_id: Any, value: Any = None) -> bool:
        op = self.pop(correlation_id)
        if op is None:
            if self.is_abandoned(correlation_id):
                log.debug("[%s] Пізня відповідь для %s відкинута.", self._owner, correlation_id)
            return False
        return settle_future(op.future, result=value)

    def fail(self, correlation_id: Any, error: BaseException) -> bool:
        op = self.pop(correlation_id)
        if op is None:
            return False
        return settle_future(op.future, error=error)

    def ids(self, kind: Optional[str] = None) -> List[str]:
        return [cid for cid, op in self._ops.items() if kind is None or op.kind == kind]

    def fail_all(self, error: BaseException, kind: Optional[str] = None) -> int:
        count = 0
        for correlation_id in self.ids(kind):
            if self.fail(correlation_id, error):
                count += 1
        return count


# ── Базова сесія ─────────────────────────────────────────────────────────────
class SessionState(str, enum.Enum):
    ACTIVE = "active"
    DETACHED = "detached"
    DELETED = "deleted"


class SessionBase:
    """Спільна поведінка сесій: реєстрація, таблиця обробників, rehydrate.

    Підкласи задають `kind`, `_HANDLERS` (upstream method → ім'я методу),
    `_create_envelopes()` та `_delete_envelopes()`.
    """

    kind = "session"
    _HANDLERS: Dict[str, str] = {}

    def __init__(self, client: Any, *, session_id: Optional[str] = None, owner: Optional[str] = None) -> None:
        self._client = client
        self.session_id = session_id or gen_session_id(self.kind)
        # Дочірні сесії (replay графіка) відновлює власник, а не реєстр.
        self.owner = owner
        self.state = SessionState.ACTIVE
        self.events = EventEmitter(self.session_id, deliver=getattr(client, "deliver", None))
        self.pending = PendingOps(client, self.session_id)
        client.dispatch(self._open)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.session_id} {self.state.value}>"

    # -- підписки ---------------------------------------------------------
    def on(self, event: str, callback: EventHandler) -> EventHandler:
        return self.events.on(event, callback)

    def on_event(self, callback: EventHandler) -> EventHandler:
        return self.events.on_event(callback)

    def on_error(self, callback: EventHandler) -> EventHandler:
        return self.events.on("error", callback)

    @property
    def is_active(self) -> bool:
        return self.state is SessionState.ACTIVE

    # -- життєвий цикл ----------------------------------------------------
    def _open(self) -> None:
        self._client.register_session(self)
        for method, params in self._create_envelopes():
            self._send(method, params)

    def _create_envelopes(self) -> Sequence[Tuple[str, List[Any]]]:
        return ()

    def _delete_envelopes(self) -> Sequence[Tuple[str, List[Any]]]:
        return ()

    def _send(self, method: str, params: List[Any]) -> None:
        self._client.send(method, params, session_id=self.session_id)

    def _ensure_active(self) -> None:
        if self.state is not SessionState.ACTIVE:
            raise Detached(f"Сесія {self.session_id} у стані {self.state.value}")

    def _submit(self, fn: Callable[..., Any], *args: Any) -> None:
        self._ensure_active()
        self._client.dispatch(fn, *args)

    def _submit_op(
        self,
        correlation_id: str,
        fn: Callable[..., Any],
        *args: Any,
    ) -> concurrent.futures.Future:
        """Створює future для операції й ставить `fn(future, *args)` у чергу."""

        future = new_future(correlation_id)
        if self.state is not SessionState.ACTIVE:
            future.set_exception(Detached(f"Сесія {self.session_id} у стані {self.state.value}"))
            return future
        self._client.dispatch(fn, future, *args)
        return future

    def _track(self, future: concurrent.futures.Future, kind: str, timeout: Optional[float] = None) -> bool:
        if self.state is not SessionState.ACTIVE:
            settle_future(future, error=Detached(f"Сесія {self.session_id} у стані {self.state.value}"))
            return False
        if timeout is None:
            timeout = self._client.config.request_timeout
        return self.pending.track(future, kind, timeout=timeout)

    def rehydrate(self) -> None:
        """Повторно надсилає create/subscribe після reconnect (у потоці циклу)."""

        for method, params in self._create_envelopes():
            self._send(method, params)

    def detach(self, reason: str = "reconnect") -> None:
        if self.state is not SessionState.ACTIVE:
            return
        self.state = SessionState.DETACHED
        error = Detached(f"Сесію {self.session_id} від'єднано ({reason})")
        self.pending.fail_all(error)
        self.events.emit("error", error)

    def delete(self) -> None:
        if self.state is SessionState.DELETED:
            return
        self._client.dispatch(self._delete)

    def _delete(self) -> None:
        if self.state is SessionState.DELETED:
            return
        was_active = self.state is SessionState.ACTIVE
        self.state = SessionState.DELETED
        if was_active:
            for method, params in self._delete_envelopes():
                self._client.send(method, params, session_id=self.session_id, transient=True)
        self._client.unregister_session(self.session_id)
        self.pending.fail_all(Detached(f"Сесію {self.session_id} видалено"))

    # -- роутинг ----------------------------------------------------------
    def handle(self, envelope: Envelope) -> bool:
        name = self._HANDLERS.get(envelope.method)
        if name is None:
            if _should_log_unknown(envelope.method):
                log.debug("[%s] Невідомий метод '%s' відкинуто.", self.session_id, envelope.method)
            return False
        if self.state is SessionState.DELETED:
            return False
        getattr(self, name)(envelope.params)
        return True


# ── Реєстр сесій ─────────────────────────────────────────────────────────────
class SessionRegistry:
    """SessionId → Session у порядку створення (порядок rehydrate)."""

    def __init__(self) -> None:
        self._sessions: Dict[str, SessionBase] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def __iter__(self) -> Iterator[SessionBase]:
        return iter(list(self._sessions.values()))

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def add(self, session: SessionBase) -> None:
        if session.session_id in self._sessions:
            raise ValueError(f"Сесія {session.session_id} вже зареєстрована")
        self._sessions[session.session_id] = session

    def remove(self, session_id: str) -> Optional[SessionBase]:
        return self._sessions.pop(session_id, None)

    def get(self, session_id: Optional[str]) -> Optional[SessionBase]:
        if session_id is None:
            return None
        return self._sessions.get(session_id)

    def ids(self) -> List[str]:
        return list(self._sessions)

    def top_level(self) -> List[SessionBase]:
        return [session for session in self._sessions.values() if session.owner is None]

    def route(self, envelope: Envelope) -> bool:
        """Доставляє конверт сесії-власнику за `p[0]`; False, якщо власника немає."""

        session = self.get(envelope.session_id)
        if session is None:
            return False
        return session.handle(envelope)

    def counts_by_kind(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for session in self._sessions.values():
            counts[session.kind] = counts.get(session.kind, 0) + 1
        return counts
