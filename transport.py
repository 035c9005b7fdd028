"""Транспорт: одне впорядковане двонаправлене текстове з'єднання.

Клієнт працює з абстрактним `Transport`, тому тести підставляють
in-memory реалізацію замість WebSocket.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from typing import Optional, Union

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from tv_errors import NotOpen, TransportError
from tv_schema import ORIGIN

log = logging.getLogger("tv_connector.transport")
if not log.handlers:
    log.addHandler(logging.NullHandler())

Frame = Union[str, bytes]


class Transport(abc.ABC):
    """Мінімальний контракт з'єднання для `StreamClient`.

    `recv()` повертає наступне вхідне повідомлення або `None`, коли
    з'єднання закрите штатно; обрив чи I/O-помилка → `TransportError`.
    """

    @property
    @abc.abstractmethod
    def is_open(self) -> bool: ...

    @abc.abstractmethod
    async def open(self, url: str, *, timeout: float) -> None: ...

    @abc.abstractmethod
    async def send(self, frame: str) -> None: ...

    @abc.abstractmethod
    async def recv(self) -> Optional[Frame]: ...

    @abc.abstractmethod
    async def close(self, reason: str = "") -> None: ...


class WebsocketTransport(Transport):
    """WebSocket-транспорт на `websockets` з Origin tradingview.com."""

    def __init__(self, *, origin: str = ORIGIN, max_size: Optional[int] = None) -> None:
        self._origin = origin
        self._max_size = max_size
        self._ws = None
        self._closed = True

    @property
    def is_open(self) -> bool:
        return self._ws is not None and not self._closed

    async def open(self, url: str, *, timeout: float) -> None:
        try:
            # Keepalive протоколу власний (`~h~N`), тому ping рівня WebSocket вимкнено.
            self._ws = await websockets.connect(
                url,
                origin=self._origin,
                open_timeout=timeout,
                ping_interval=None,
                max_size=self._max_size,
            )
        except asyncio.TimeoutError:
            # TimeoutError є підкласом OSError; connectTimeout обробляє клієнт.
            raise
        except (OSError, WebSocketException) as exc:
            raise TransportError(f"Не вдалося підключитися до {url}: {exc}") from exc
        self._closed = False
        log.debug("WebSocket відкрито: %s", url)

    async def send(self, frame: str) -> None:
        if not self.is_open:
            raise NotOpen("Транспорт не відкритий")
        try:
            await self._ws.send(frame)
        except ConnectionClosed as exc:
            self._closed = True
            raise TransportError(f"З'єднання закрите під час надсилання: {exc}") from exc

    async def recv(self) -> Optional[Frame]:
        if self._ws is None:
            raise NotOpen("Транспорт не відкритий")
        try:
            return await self._ws.recv()
        except ConnectionClosed as exc:
            self._closed = True
            if exc.rcvd is not None and exc.rcvd.code == 1000:
                return None
            raise TransportError(f"З'єднання обірване: {exc}") from exc

    async def close(self, reason: str = "") -> None:
        ws, self._ws = self._ws, None
        self._closed = True
        if ws is None:
            return
        try:
            await ws.close(code=1000, reason=reason[:120])
        except (OSError, WebSocketException) as exc:
            log.debug("Помилка під час закриття WebSocket: %s", exc)
