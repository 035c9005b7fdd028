"""Ієрархія помилок стрімінгового ядра.

Помилки поділяються на транспортні (їх ретраїть reconnect engine),
протокольні, авторизаційні та помилки конкретних сесій, які доставляються
через канал `error` сесії і через future ініціюючої операції.
"""

from __future__ import annotations

from typing import Any, Optional


class StreamError(RuntimeError):
    """Базова помилка стрімінгового клієнта."""


class TransportError(StreamError):
    """Dial / I/O / TLS: з'єднання втрачене або не встановлене."""


class NotOpen(TransportError):
    """Спроба надіслати кадр у транспорт, який ще не відкритий."""


class ProtocolError(StreamError):
    """Порушення framing'у (довжина не збігається) або невалідний JSON."""

    def __init__(self, message: str, *, packet: Optional[str] = None) -> None:
        super().__init__(message)
        self.packet = packet


class AuthError(StreamError):
    """Auth-токен не отримано або upstream відхилив auth-конверт."""

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class Detached(StreamError):
    """Сесія від'єднана (видалена або не відновлена після reconnect)."""


class OperationTimeout(StreamError):
    """Операція з очікуванням відповіді перевищила свій таймаут."""

    def __init__(self, message: str, *, correlation_id: Optional[str] = None) -> None:
        super().__init__(message)
        self.correlation_id = correlation_id


class SessionError(StreamError):
    """Бізнес-помилка upstream у межах однієї сесії."""

    kind = "session_error"

    def __init__(
        self,
        message: str,
        *,
        session_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
        details: Any = None,
    ) -> None:
        super().__init__(message)
        self.session_id = session_id
        self.correlation_id = correlation_id
        self.details = details


class SymbolError(SessionError):
    kind = "symbol_error"


class SeriesError(SessionError):
    kind = "series_error"


class StudyError(SessionError):
    kind = "study_error"


class ReplayError(SessionError):
    kind = "replay_error"


class HistoryError(SessionError):
    """Помилка history-запиту; `request_id` вказує на запит-джерело."""

    kind = "history_error"

    def __init__(self, message: str, *, request_id: Any = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.request_id = request_id


class CriticalError(SessionError):
    """Upstream повідомив про невідновлювану помилку; сесія знищується."""

    kind = "critical_error"


class HandlerError(StreamError):
    """Обробник події кинув виняток; інші обробники все одно викликані."""

    def __init__(self, event: str, original: BaseException) -> None:
        super().__init__(f"Обробник події '{event}' завершився помилкою: {original}")
        self.event = event
        self.original = original


class Backpressure(StreamError):
    """Черга доставки переповнена; найстаріша подія відкинута."""

    def __init__(self, key: str, dropped: int) -> None:
        super().__init__(f"Черга доставки '{key}' переповнена, відкинуто {dropped}")
        self.key = key
        self.dropped = dropped
