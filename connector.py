"""Стрімінговий клієнт TradingView: з'єднання, reconnect, роутинг, доставка подій.

`StreamClient` тримає власний asyncio event loop в окремому daemon-потоці:
    • один reader (декодування кадрів і роутинг у сесії);
    • один writer (усі вихідні кадри в порядку надсилання);
    • монітор живості (пропущені keepalive-інтервали → TransportError);
    • черга доставки подій з обмеженням high-water по кожному емітеру.

Публічні методи клієнта й сесій можна викликати з будь-якого потоку: команди
переносяться в цикл через `call_soon_threadsafe`, тому порядок команд однієї
сесії = порядок викликів.

Приклад запуску:
    $ python connector.py BINANCE:BTCUSDT BINANCE:ETHUSDT
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import enum
import logging
import os
import random
import sys
import threading
import time
from collections import deque
from concurrent.futures import TimeoutError as FutureTimeout
from functools import partial
from logging import Logger
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from prometheus_client import Counter, Gauge, start_http_server
from rich.console import Console
from rich.logging import RichHandler

from chart_session import ChartSession
from config import ClientConfig, ReconnectPolicy, load_config
from history_session import HistorySession
from quote_session import QuoteSession
from sessions import EventEmitter, EventHandler, SessionBase, SessionRegistry, settle_future
from transport import Transport, WebsocketTransport
from tv_auth import AuthUser, fetch_user
from tv_errors import AuthError, ProtocolError, StreamError, TransportError
from tv_protocol import (
    Envelope,
    Keepalive,
    Packet,
    ServerInfo,
    decode_all,
    encode_envelope,
    encode_keepalive,
)
from tv_schema import GLOBAL_METHODS, SESSION_SCOPED_METHODS, UNAUTHORIZED_TOKEN, ServerHelloPayload

# Налаштування логування
log: Logger = logging.getLogger("tv_connector")
_LOGGING_CONFIGURED = False
_RICH_CONSOLE: Optional[Console] = None

CLIENT_EVENTS_KEY = "client"
DELIVERY_BATCH = 256
END_TIMEOUT_SECONDS = 5.0
LOOP_JOIN_TIMEOUT_SECONDS = 5.0
BACKPRESSURE_LOG_INTERVAL_SECONDS = 10.0
_BACKPRESSURE_LOG_STATE: Dict[str, float] = {}


def _should_log_backpressure(key: str) -> bool:
    now = time.monotonic()
    last = _BACKPRESSURE_LOG_STATE.get(key)
    if last is not None and now - last < BACKPRESSURE_LOG_INTERVAL_SECONDS:
        return False
    _BACKPRESSURE_LOG_STATE[key] = now
    return True


def setup_logging(debug: bool = False) -> None:
    """Налаштовуємо логування з RichHandler.

    Конфігуруємо саме логер `tv_connector` (а не root), щоб формат був
    стабільним навіть якщо середовище вже налаштувало logging.
    """
    global _LOGGING_CONFIGURED
    level = logging.DEBUG if debug else logging.INFO
    target_logger = logging.getLogger("tv_connector")
    if _LOGGING_CONFIGURED:
        if debug:
            target_logger.setLevel(level)
            for handler in target_logger.handlers:
                handler.setLevel(level)
        return

    global _RICH_CONSOLE
    if _RICH_CONSOLE is None:
        force_terminal = bool(sys.stderr.isatty()) or os.getenv("TV_RICH_FORCE_TERMINAL") == "1"
        _RICH_CONSOLE = Console(
            stderr=True,
            force_terminal=force_terminal,
            color_system="standard" if force_terminal else None,
        )

    for handler in target_logger.handlers:
        if isinstance(handler, RichHandler):
            _LOGGING_CONFIGURED = True
            return

    handler = RichHandler(
        console=_RICH_CONSOLE,
        rich_tracebacks=True,
        show_path=False,
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))

    target_logger.setLevel(level)
    target_logger.addHandler(handler)
    target_logger.propagate = False
    _LOGGING_CONFIGURED = True


# Конфігуруємо логування ще під час імпорту, щоб ранні log.debug не зникали.
setup_logging()

_METRICS_SERVER_STARTED = False

# Prometheus-метрики
PROM_FRAMES_RECEIVED = Counter(
    "tv_frames_received_total",
    "Кількість отриманих транспортних кадрів",
)
PROM_FRAMES_SENT = Counter(
    "tv_frames_sent_total",
    "Кількість надісланих транспортних кадрів",
)
PROM_ENVELOPES_ROUTED = Counter(
    "tv_envelopes_routed_total",
    "Конверти за класом методу",
    ["kind"],
)
PROM_PROTOCOL_ERRORS = Counter(
    "tv_protocol_errors_total",
    "Кількість відкинутих некоректних кадрів/сегментів",
)
PROM_RECONNECT_ATTEMPTS = Counter(
    "tv_reconnect_attempts_total",
    "Кількість спроб перепідключення",
)
PROM_BACKPRESSURE_DROPS = Counter(
    "tv_backpressure_drops_total",
    "Події, відкинуті через переповнення черги доставки",
)
PROM_CONNECTION_STATE = Gauge(
    "tv_connection_state",
    "Стан з'єднання: 0=idle 1=connecting 2=open 3=authenticated 4=closing 5=reconnecting 6=failed",
)
PROM_ACTIVE_SESSIONS = Gauge(
    "tv_active_sessions",
    "Кількість зареєстрованих сесій",
)


def _ensure_metrics_server(port: int) -> None:
    global _METRICS_SERVER_STARTED
    if _METRICS_SERVER_STARTED:
        return
    start_http_server(port)
    log.info("Prometheus-метрики доступні на порту %s.", port)
    _METRICS_SERVER_STARTED = True


class ConnectionState(str, enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    AUTHENTICATED = "authenticated"
    CLOSING = "closing"
    RECONNECTING = "reconnecting"
    FAILED = "failed"


_STATE_CODES = {state: idx for idx, state in enumerate(ConnectionState)}


class ReconnectBackoff:
    """Затримки reconnect: fast-first, далі експонента з обмеженням і джитером.

    `next_delay(attempt)` для attempt=0 повертає `fast_first_delay`; далі
    `min(max_delay, base_delay * multiplier**attempt)`, з джитером рівномірно
    в `[0, delay)`.
    """

    def __init__(self, policy: ReconnectPolicy, *, rng: Optional[random.Random] = None) -> None:
        self.policy = policy
        self._rng = rng or random.Random()
        self._lock = threading.Lock()
        self._fail_count = 0
        self._last_delay = 0.0
        self._last_error: Optional[str] = None
        self._last_error_ts: Optional[float] = None

    @property
    def exhausted(self) -> bool:
        return self._fail_count >= self.policy.max_retries

    def next_delay(self, attempt: int) -> float:
        policy = self.policy
        if attempt <= 0:
            return max(0.0, policy.fast_first_delay)
        try:
            delay = policy.base_delay * (policy.multiplier ** attempt)
        except OverflowError:
            delay = policy.max_delay
        delay = min(policy.max_delay, delay)
        if policy.jitter and delay > 0:
            delay = self._rng.uniform(0.0, delay)
        return max(0.0, delay)

    def fail(self, reason: str) -> float:
        with self._lock:
            delay = self.next_delay(self._fail_count)
            self._fail_count += 1
            self._last_delay = delay
            self._last_error = reason
            self._last_error_ts = time.time()
            return delay

    def success(self) -> None:
        with self._lock:
            self._fail_count = 0
            self._last_delay = 0.0

    @property
    def attempts(self) -> int:
        return self._fail_count

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "attempts": self._fail_count,
                "max_retries": self.policy.max_retries,
                "last_delay_seconds": round(self._last_delay, 3),
                "last_error": self._last_error,
                "last_error_ts": self._last_error_ts,
            }


class DeliveryQueue:
    """Черги доставки подій по ключу емітера, що розбираються в потоці циклу.

    Порядок подій одного емітера зберігається. Коли черга ключа перевищує
    `high_water`, найстаріша подія відкидається і викликається `on_drop`.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        high_water: int,
        *,
        on_drop: Optional[Callable[[str, int], None]] = None,
    ) -> None:
        self._loop = loop
        self._high_water = max(1, int(high_water))
        self._on_drop = on_drop
        self._queues: Dict[str, Deque[Callable[[], None]]] = {}
        self._order: Deque[str] = deque()
        self._scheduled = False
        self._dropped: Dict[str, int] = {}
        self.enqueued = 0
        self.delivered = 0

    def __len__(self) -> int:
        return sum(len(items) for items in self._queues.values())

    def push(self, key: str, fn: Callable[[], None]) -> None:
        items = self._queues.setdefault(key, deque())
        items.append(fn)
        self._order.append(key)
        self.enqueued += 1
        if len(items) > self._high_water:
            items.popleft()
            dropped = self._dropped.get(key, 0) + 1
            self._dropped[key] = dropped
            PROM_BACKPRESSURE_DROPS.inc()
            if self._on_drop is not None:
                self._on_drop(key, dropped)
        self._schedule()

    def _schedule(self) -> None:
        if self._scheduled:
            return
        self._scheduled = True
        self._loop.call_soon(self._drain)

    def _drain(self) -> None:
        self._scheduled = False
        budget = DELIVERY_BATCH
        while self._order and budget > 0:
            key = self._order.popleft()
            items = self._queues.get(key)
            if not items:
                # Маркер події, яку вже відкинуто через backpressure.
                continue
            fn = items.popleft()
            if not items:
                del self._queues[key]
            budget -= 1
            try:
                fn()
            except Exception:  # noqa: BLE001 - межа доставки подій
                log.exception("Доставка події для '%s' завершилась помилкою.", key)
            self.delivered += 1
        if self._order:
            self._schedule()

    def snapshot(self) -> Dict[str, Any]:
        return {
            "depth": len(self),
            "high_water": self._high_water,
            "enqueued": self.enqueued,
            "delivered": self.delivered,
            "dropped": dict(self._dropped),
            "dropped_total": sum(self._dropped.values()),
        }


class StreamClient:
    """Connection manager: один транспорт, реєстр сесій, reconnect і rehydration.

    Події клієнта: `connected`, `disconnected`, `reconnecting`,
    `reconnected`, `connectTimeout`, `error`, `logged`, `ping`, `data`,
    `backpressure`; `on_event(cb)` отримує всі події з їх назвою.
    """

    def __init__(
        self,
        config: Optional[ClientConfig] = None,
        *,
        transport_factory: Optional[Callable[[], Transport]] = None,
        auth_fetcher: Optional[Callable[..., AuthUser]] = None,
        **options: Any,
    ) -> None:
        if config is None:
            config = ClientConfig.from_options(options)
        elif options:
            raise TypeError("Передайте або config, або опції, але не обидва")
        self.config = config
        if config.debug:
            setup_logging(debug=True)
        self._log: Logger = config.logger or log
        self._transport_factory = transport_factory or WebsocketTransport
        self._auth_fetcher = auth_fetcher or fetch_user
        self._backoff = ReconnectBackoff(config.reconnect)

        self.registry = SessionRegistry()
        self.events = EventEmitter(CLIENT_EVENTS_KEY, deliver=self.deliver)

        self._state = ConnectionState.IDLE
        self._outbox: Deque[Tuple[Optional[str], Envelope]] = deque()
        self._transport: Optional[Transport] = None
        self._write_queue: Optional[asyncio.Queue] = None
        self._hello: Optional[asyncio.Event] = None
        self._run_task: Optional[asyncio.Task] = None
        self._connect_waiters: List[concurrent.futures.Future] = []
        self._closing = False
        self._ever_authenticated = False
        self._attempt = 0
        self._last_rx = 0.0
        self._last_error: Optional[str] = None
        self._server_info: Optional[ServerHelloPayload] = None
        self._user: Optional[AuthUser] = None
        self._frames_in = 0
        self._frames_out = 0
        self._protocol_errors = 0
        self._reconnects = 0
        self._started_ts = time.time()

        self._loop = asyncio.new_event_loop()
        self._loop_thread_id: Optional[int] = None
        self._loop_ready = threading.Event()
        self._delivery = DeliveryQueue(self._loop, config.delivery_high_water, on_drop=self._on_delivery_drop)
        self._thread = threading.Thread(
            target=self._run_loop,
            name="TVStreamClient",
            daemon=True,
        )
        self._thread.start()
        self._loop_ready.wait()

        if config.observability.metrics_enabled:
            _ensure_metrics_server(config.observability.metrics_port)

    # ── Стан ──

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_open(self) -> bool:
        return self._state in (ConnectionState.OPEN, ConnectionState.AUTHENTICATED)

    @property
    def is_logged(self) -> bool:
        return self._state is ConnectionState.AUTHENTICATED

    @property
    def server_info(self) -> Optional[ServerHelloPayload]:
        return self._server_info

    @property
    def user(self) -> Optional[AuthUser]:
        return self._user

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        self._log.debug("Стан з'єднання: %s → %s", self._state.value, state.value)
        self._state = state
        PROM_CONNECTION_STATE.set(_STATE_CODES[state])

    # ── Підписки ──

    def on(self, event: str, callback: EventHandler) -> EventHandler:
        return self.events.on(event, callback)

    def on_event(self, callback: EventHandler) -> EventHandler:
        return self.events.on_event(callback)

    def on_connected(self, callback: EventHandler) -> EventHandler:
        return self.events.on("connected", callback)

    def on_disconnected(self, callback: EventHandler) -> EventHandler:
        return self.events.on("disconnected", callback)

    def on_reconnecting(self, callback: EventHandler) -> EventHandler:
        return self.events.on("reconnecting", callback)

    def on_reconnected(self, callback: EventHandler) -> EventHandler:
        return self.events.on("reconnected", callback)

    def on_error(self, callback: EventHandler) -> EventHandler:
        return self.events.on("error", callback)

    def on_logged(self, callback: EventHandler) -> EventHandler:
        return self.events.on("logged", callback)

    def on_ping(self, callback: EventHandler) -> EventHandler:
        return self.events.on("ping", callback)

    def on_data(self, callback: EventHandler) -> EventHandler:
        return self.events.on("data", callback)

    # ── Фабрики сесій ──

    def quote_session(self, **kwargs: Any) -> QuoteSession:
        return QuoteSession(self, **kwargs)

    def chart_session(self, **kwargs: Any) -> ChartSession:
        return ChartSession(self, **kwargs)

    def history_session(self, **kwargs: Any) -> HistorySession:
        return HistorySession(self, **kwargs)

    # ── Міст для сесій ──

    def _on_loop_thread(self) -> bool:
        return threading.get_ident() == self._loop_thread_id

    def _ensure_loop(self) -> None:
        if self._loop.is_closed():
            raise StreamError("Клієнт закрито")

    def dispatch(self, fn: Callable[..., Any], *args: Any) -> None:
        """Виконує команду в потоці циклу (одразу, якщо вже в ньому)."""

        if self._on_loop_thread():
            self._run_command(fn, args)
            return
        self._ensure_loop()
        self._loop.call_soon_threadsafe(self._run_command, fn, args)

    def call_later(self, delay: float, fn: Callable[..., Any], *args: Any) -> asyncio.TimerHandle:
        """Таймер у циклі; викликати лише з потоку циклу."""

        return self._loop.call_later(delay, self._run_command, fn, args)

    def deliver(self, key: str, fn: Callable[[], None]) -> None:
        if self._on_loop_thread():
            self._delivery.push(key, fn)
            return
        self._ensure_loop()
        self._loop.call_soon_threadsafe(self._delivery.push, key, fn)

    def _run_command(self, fn: Callable[..., Any], args: Tuple[Any, ...]) -> None:
        try:
            fn(*args)
        except Exception as exc:  # noqa: BLE001 - межа черги команд
            self._log.exception("Команда %s завершилась помилкою.", getattr(fn, "__qualname__", fn))
            if args and isinstance(args[0], concurrent.futures.Future):
                settle_future(args[0], error=exc)
            else:
                self.events.emit("error", exc)

    def register_session(self, session: SessionBase) -> None:
        self.registry.add(session)
        PROM_ACTIVE_SESSIONS.set(len(self.registry))
        self._log.debug("Сесію %s зареєстровано.", session.session_id)

    def unregister_session(self, session_id: str) -> None:
        self.registry.remove(session_id)
        self._purge_outbox(session_id)
        PROM_ACTIVE_SESSIONS.set(len(self.registry))

    def send(
        self,
        method: str,
        params: Optional[List[Any]] = None,
        *,
        session_id: Optional[str] = None,
        transient: bool = False,
    ) -> None:
        """Надсилає конверт або ставить його в outbox до автентифікації.

        `transient=True`: команда має сенс лише для поточного з'єднання
        (наприклад, видалення сесії) і без з'єднання відкидається.
        """

        if not self._on_loop_thread():
            self._ensure_loop()
            self._loop.call_soon_threadsafe(
                partial(self.send, method, params, session_id=session_id, transient=transient)
            )
            return
        envelope = Envelope(method, list(params or []))
        if self._state is ConnectionState.AUTHENTICATED and self._write_queue is not None:
            self._write_queue.put_nowait(encode_envelope(envelope))
            return
        if transient:
            self._log.debug("Транзієнтну команду %s відкинуто: немає з'єднання.", method)
            return
        self._outbox.append((session_id, envelope))

    def _write_raw(self, frame: str) -> None:
        if self._write_queue is not None:
            self._write_queue.put_nowait(frame)

    def _purge_outbox(self, session_id: str) -> None:
        if not self._outbox:
            return
        self._outbox = deque(item for item in self._outbox if item[0] != session_id)

    def _flush_outbox(self) -> None:
        while self._outbox and self._write_queue is not None:
            _session_id, envelope = self._outbox.popleft()
            self._write_queue.put_nowait(encode_envelope(envelope))

    def _on_delivery_drop(self, key: str, dropped: int) -> None:
        if _should_log_backpressure(key):
            self._log.warning("Черга доставки '%s' переповнена: відкинуто %s подій.", key, dropped)
        if key != CLIENT_EVENTS_KEY:
            self.events.emit("backpressure", {"key": key, "dropped": dropped})

    # ── Життєвий цикл ──

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop_thread_id = threading.get_ident()
        self._loop.call_soon(self._loop_ready.set)
        self._loop.run_forever()

    def connect(self) -> concurrent.futures.Future:
        """Запускає з'єднання; future завершується після автентифікації."""

        self._ensure_loop()
        future: concurrent.futures.Future = concurrent.futures.Future()
        self.dispatch(self._start, future)
        return future

    def _start(self, future: concurrent.futures.Future) -> None:
        if self._run_task is not None and not self._run_task.done():
            if self._state is ConnectionState.AUTHENTICATED:
                settle_future(future, result=None)
            else:
                self._connect_waiters.append(future)
            return
        self._closing = False
        self._attempt = 0
        self._backoff.success()
        self._connect_waiters.append(future)
        self._run_task = self._loop.create_task(self._run())

    def end(self, timeout: float = END_TIMEOUT_SECONDS) -> None:
        """Штатно закриває з'єднання без reconnect; сесії лишаються в реєстрі."""

        if self._loop.is_closed():
            return
        if self._on_loop_thread():
            self._loop.create_task(self._shutdown())
            return
        future = asyncio.run_coroutine_threadsafe(self._shutdown(), self._loop)
        try:
            future.result(timeout=timeout)
        except FutureTimeout:
            self._log.warning("Закриття з'єднання зайняло надто довго.")

    def close(self) -> None:
        """`end()` + зупинка потоку циклу. Після цього клієнт непридатний."""

        if self._loop.is_closed():
            return
        self.end()
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=LOOP_JOIN_TIMEOUT_SECONDS)
        if not self._thread.is_alive():
            self._loop.close()

    async def _shutdown(self) -> None:
        self._closing = True
        was_connected = self.is_open
        if self._state is not ConnectionState.IDLE:
            self._set_state(ConnectionState.CLOSING)
        task, self._run_task = self._run_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self._teardown_transport()
        self._fail_waiters(StreamError("З'єднання закрито викликачем"))
        self._set_state(ConnectionState.IDLE)
        if was_connected:
            self.events.emit("disconnected")
        self._log.info("З'єднання закрито.")

    async def _run(self) -> None:
        policy = self.config.reconnect
        while True:
            try:
                await self._connect_once()
            except asyncio.CancelledError:
                raise
            except AuthError as exc:
                await self._teardown_transport()
                self._fail(exc)
                return
            except (TransportError, ProtocolError, OSError) as exc:
                self._last_error = str(exc)
                self._log.warning("З'єднання втрачено: %s", exc)
                self.events.emit("error", exc)
            except Exception as exc:  # noqa: BLE001 - межа циклу з'єднання
                self._last_error = str(exc)
                self._log.exception("Неочікувана помилка у циклі з'єднання.")
                self.events.emit("error", exc)
            finally:
                if not self._closing:
                    await self._teardown_transport()

            if self._closing:
                return
            self._on_disconnected()

            if self._attempt >= policy.max_retries:
                self._fail(TransportError(f"Вичерпано {policy.max_retries} спроб перепідключення"))
                return
            delay = self._backoff.fail(self._last_error or "disconnect")
            self._attempt += 1
            self._reconnects += 1
            PROM_RECONNECT_ATTEMPTS.inc()
            self._set_state(ConnectionState.RECONNECTING)
            self.events.emit("reconnecting", {"attempt": self._attempt, "maxRetries": policy.max_retries})
            self._log.info(
                "Перепідключення через %.2f с (спроба %s/%s).",
                delay,
                self._attempt,
                policy.max_retries,
            )
            await asyncio.sleep(delay)

    async def _connect_once(self) -> None:
        cfg = self.config
        token = await self._resolve_token()
        self._set_state(ConnectionState.CONNECTING)
        transport = self._transport_factory()
        self._transport = transport
        url = cfg.endpoint_url()
        try:
            await asyncio.wait_for(transport.open(url, timeout=cfg.connect_timeout), cfg.connect_timeout)
        except asyncio.TimeoutError as exc:
            timeout_ms = int(cfg.connect_timeout * 1000)
            self.events.emit("connectTimeout", {"timeoutMs": timeout_ms})
            raise TransportError(f"Підключення до {url} перевищило {timeout_ms} мс") from exc

        self._set_state(ConnectionState.OPEN)
        self._last_rx = time.monotonic()
        self._write_queue = asyncio.Queue()
        self._hello = asyncio.Event()
        tasks = [
            asyncio.ensure_future(self._reader(transport)),
            asyncio.ensure_future(self._writer(transport, self._write_queue)),
            asyncio.ensure_future(self._liveness()),
        ]
        try:
            self._write_raw(encode_envelope(Envelope("set_auth_token", [token])))
            settle = cfg.auth.settle_timeout
            if settle > 0:
                try:
                    await asyncio.wait_for(self._hello.wait(), settle)
                except asyncio.TimeoutError:
                    self._log.debug("Сервер не надіслав привітання за %.1f с.", settle)
            self._set_state(ConnectionState.AUTHENTICATED)
            self._on_authenticated()
            done, _pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        for task in done:
            if not task.cancelled() and task.exception() is not None:
                raise task.exception()  # type: ignore[misc]
        raise TransportError("З'єднання завершилось")

    async def _resolve_token(self) -> str:
        cfg = self.config
        if cfg.token:
            return cfg.token
        if not cfg.session:
            return UNAUTHORIZED_TOKEN
        attempts = cfg.auth.max_attempts
        last_error: Optional[AuthError] = None
        for attempt in range(1, attempts + 1):
            try:
                user = await self._loop.run_in_executor(
                    None,
                    partial(
                        self._auth_fetcher,
                        cfg.session,
                        cfg.signature,
                        cfg.location,
                        timeout=cfg.connect_timeout,
                    ),
                )
            except AuthError as exc:
                last_error = exc
                self._log.warning("Auth-токен не отримано (спроба %s/%s): %s", attempt, attempts, exc)
                if attempt < attempts:
                    await asyncio.sleep(cfg.auth.retry_delay)
                continue
            self._user = user
            return user.auth_token
        assert last_error is not None
        raise last_error

    async def _teardown_transport(self) -> None:
        transport, self._transport = self._transport, None
        self._write_queue = None
        self._hello = None
        if transport is None:
            return
        try:
            await transport.close()
        except (TransportError, OSError) as exc:
            self._log.debug("Помилка під час закриття транспорту: %s", exc)

    def _on_authenticated(self) -> None:
        reconnect = self._ever_authenticated
        self._ever_authenticated = True
        self._attempt = 0
        self._backoff.success()
        if reconnect and self.config.auto_rehydrate:
            restored = self._rehydrate()
            # Стан зареєстрованих сесій уже відтворено; їх команди з outbox застаріли.
            self._outbox = deque(item for item in self._outbox if item[0] is None or item[0] not in self.registry)
            self._log.info("Відновлено %s сесій після перепідключення.", restored)
        if reconnect:
            self.events.emit("reconnected")
        self.events.emit("connected")
        self._flush_outbox()
        waiters, self._connect_waiters = self._connect_waiters, []
        for future in waiters:
            settle_future(future, result=None)

    def _rehydrate(self) -> int:
        restored = 0
        for session in self.registry.top_level():
            if not session.is_active:
                continue
            try:
                session.rehydrate()
            except Exception as exc:  # noqa: BLE001 - одна сесія не блокує інші
                self._log.exception("Не вдалося відновити сесію %s.", session.session_id)
                self.events.emit("error", exc)
                continue
            restored += 1
        return restored

    def _on_disconnected(self) -> None:
        was_connected = self._state in (ConnectionState.OPEN, ConnectionState.AUTHENTICATED)
        if not was_connected:
            return
        self.events.emit("disconnected")
        if self.config.auto_rehydrate:
            return
        for session in list(self.registry):
            session.detach("reconnect")
            self.unregister_session(session.session_id)

    def _fail(self, error: BaseException) -> None:
        self._last_error = str(error)
        self._set_state(ConnectionState.FAILED)
        self._log.error("З'єднання остаточно втрачено: %s", error)
        self.events.emit("error", error)
        for session in list(self.registry):
            session.detach("failed")
        self._fail_waiters(error)

    def _fail_waiters(self, error: BaseException) -> None:
        waiters, self._connect_waiters = self._connect_waiters, []
        for future in waiters:
            settle_future(future, error=error)

    # ── Читання / запис ──

    async def _writer(self, transport: Transport, queue: asyncio.Queue) -> None:
        while True:
            frame = await queue.get()
            await transport.send(frame)
            self._frames_out += 1
            PROM_FRAMES_SENT.inc()

    async def _reader(self, transport: Transport) -> None:
        cfg = self.config
        while True:
            raw = await transport.recv()
            if raw is None:
                raise TransportError("Сервер закрив з'єднання")
            self._last_rx = time.monotonic()
            self._frames_in += 1
            PROM_FRAMES_RECEIVED.inc()
            packets = decode_all(
                raw,
                strict=cfg.strict_protocol,
                compression=cfg.compression,
                on_error=self._on_protocol_error,
            )
            for packet in packets:
                self._handle_packet(packet)

    async def _liveness(self) -> None:
        settings = self.config.keepalive
        missed = 0
        while True:
            await asyncio.sleep(settings.check_interval)
            idle = time.monotonic() - self._last_rx
            missed = missed + 1 if idle >= settings.check_interval else 0
            if missed >= settings.max_missed:
                raise TransportError(f"Немає трафіку від сервера {idle:.1f} с")

    def _on_protocol_error(self, error: ProtocolError) -> None:
        self._protocol_errors += 1
        PROM_PROTOCOL_ERRORS.inc()
        self.events.emit("error", error)

    def _handle_packet(self, packet: Packet) -> None:
        if isinstance(packet, Keepalive):
            self._write_raw(encode_keepalive(packet))
            self.events.emit("ping", packet.value)
            return
        if isinstance(packet, ServerInfo):
            self._server_info = packet.payload
            if self._hello is not None:
                self._hello.set()
            self.events.emit("logged", packet.payload)
            return

        envelope = packet
        if envelope.method in GLOBAL_METHODS:
            PROM_ENVELOPES_ROUTED.labels(kind="global").inc()
            self._handle_global(envelope)
            return

        try:
            routed = self.registry.route(envelope)
        except Exception as exc:  # noqa: BLE001 - помилка обробника сесії не зупиняє reader
            self._log.exception("Обробка %s сесією %s завершилась помилкою.", envelope.method, envelope.session_id)
            self.events.emit("error", exc)
            return
        if routed:
            PROM_ENVELOPES_ROUTED.labels(kind="session").inc()
            return
        if envelope.session_id in self.registry:
            return
        PROM_ENVELOPES_ROUTED.labels(kind="unrouted").inc()
        if envelope.method in SESSION_SCOPED_METHODS:
            self._log.debug("Конверт %s для невідомої сесії %s відкинуто.", envelope.method, envelope.session_id)
            return
        self._log.debug("Нерозпізнаний конверт: %s", envelope.method)
        self.events.emit("data", envelope)

    def _handle_global(self, envelope: Envelope) -> None:
        if envelope.method == "protocol_error":
            error = ProtocolError(f"Сервер повідомив про помилку протоколу: {envelope.params}")
            self._log.error("%s", error)
            self.events.emit("error", error)
            # Reader завершується, з'єднання закривається, далі вирішує reconnect.
            raise error

    # ── Діагностика ──

    def _gather_diag_snapshot(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "loop_alive": self._loop.is_running(),
            "uptime_seconds": max(0.0, time.time() - self._started_ts),
            "server": self.config.server,
            "attempt": self._attempt,
            "max_retries": self.config.reconnect.max_retries,
            "reconnects": self._reconnects,
            "ever_authenticated": self._ever_authenticated,
            "outbox_depth": len(self._outbox),
            "write_queue_depth": self._write_queue.qsize() if self._write_queue is not None else 0,
            "sessions": len(self.registry),
            "sessions_by_kind": self.registry.counts_by_kind(),
            "frames_in": self._frames_in,
            "frames_out": self._frames_out,
            "protocol_errors": self._protocol_errors,
            "last_error": self._last_error,
            "backoff": self._backoff.snapshot(),
            "delivery": self._delivery.snapshot(),
            "server_info": dict(self._server_info) if self._server_info else None,
        }

    def diagnostics_snapshot(self) -> Dict[str, Any]:
        if self._on_loop_thread():
            return self._gather_diag_snapshot()
        if self._loop.is_closed():
            return {"state": "closed"}

        async def _collect() -> Dict[str, Any]:
            return self._gather_diag_snapshot()

        try:
            future = asyncio.run_coroutine_threadsafe(_collect(), self._loop)
            return future.result(timeout=END_TIMEOUT_SECONDS)
        except Exception:  # noqa: BLE001
            return {"state": "error"}


def main() -> None:
    """Дивиться котирування символів з argv (або `TV_WATCH`) до Ctrl+C."""

    config = load_config()
    symbols = sys.argv[1:] or [
        item.strip() for item in os.environ.get("TV_WATCH", "BINANCE:BTCUSDT").split(",") if item.strip()
    ]
    client = StreamClient(config)
    client.on_error(lambda err: log.warning("Помилка: %s", err))
    client.on_reconnecting(lambda info: log.info("Перепідключення: %s", info))

    quotes = client.quote_session(fields="minimal")
    quotes.watch(symbols)
    quotes.on("data", lambda symbol, snapshot: log.info("%s lp=%s ch=%s", symbol, snapshot.get("lp"), snapshot.get("ch")))

    try:
        client.connect().result(timeout=config.connect_timeout * 2)
        log.info("Підключено до %s, дивимось %s.", config.server, ", ".join(symbols))
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        log.info("Зупинка за запитом користувача.")
    finally:
        client.close()


if __name__ == "__main__":
    main()
