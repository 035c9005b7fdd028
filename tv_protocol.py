"""Frame codec для дуплексного стріму.

Формат кадру: `~m~<len>~m~<payload>`, де `<len>` означає довжину payload у БАЙТАХ
(utf-8), а payload містить JSON-конверт `{"m": method, "p": params}` або keepalive
`~h~<n>`. Один транспортний кадр може містити кілька логічних повідомлень.

Стиснені payload-и: якщо `p[1]` є base64-рядком із zip-сигнатурою, розпаковуємо
єдиний запис архіву і підставляємо розпарсений JSON замість рядка.
"""

from __future__ import annotations

import base64
import binascii
import io
import json
import logging
import time
import zipfile
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple, Union

from tv_errors import ProtocolError
from tv_schema import EnvelopeJson, ServerHelloPayload, validate_envelope_contract

log = logging.getLogger("tv_connector.protocol")
if not log.handlers:
    log.addHandler(logging.NullHandler())

FRAME_DELIM = "~m~"
HEARTBEAT_PREFIX = "~h~"
ZIP_BASE64_MAGIC = "UEsDB"  # base64("PK\x03\x04")

_DELIM_BYTES = FRAME_DELIM.encode("ascii")
_HEARTBEAT_BYTES = HEARTBEAT_PREFIX.encode("ascii")

# Рейт-ліміт для логів про биті сегменти: один запис на ключ за інтервал.
_MALFORMED_LOG_STATE: Dict[str, float] = {}
MALFORMED_LOG_INTERVAL_SECONDS = 30.0


def _should_log_malformed(reason: str) -> bool:
    now = time.monotonic()
    last = _MALFORMED_LOG_STATE.get(reason)
    if last is not None and now - last < MALFORMED_LOG_INTERVAL_SECONDS:
        return False
    _MALFORMED_LOG_STATE[reason] = now
    return True


@dataclass
class Envelope:
    """Логічне повідомлення протоколу."""

    method: str
    params: List[Any] = field(default_factory=list)

    @property
    def session_id(self) -> Optional[str]:
        if self.params and isinstance(self.params[0], str):
            return self.params[0]
        return None

    def to_json(self) -> EnvelopeJson:
        return {"m": self.method, "p": self.params}


class Keepalive(NamedTuple):
    """Keepalive-маркер `~h~<n>`; `token` echo-ється назад дослівно."""

    value: int
    token: str


@dataclass
class ServerInfo:
    """JSON без `m`: службове привітання сервера (session_id, release, ...)."""

    payload: ServerHelloPayload


Packet = Union[Envelope, Keepalive, ServerInfo]
ErrorCallback = Callable[[ProtocolError], None]


def encode_frame(payload: str) -> str:
    """Обгортає payload у `~m~<len>~m~`; довжина рахується в байтах utf-8."""

    byte_len = len(payload.encode("utf-8"))
    return f"{FRAME_DELIM}{byte_len}{FRAME_DELIM}{payload}"


def encode_envelope(envelope: Envelope) -> str:
    payload = envelope.to_json()
    validate_envelope_contract(payload)
    raw = json.dumps(
        payload,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return encode_frame(raw)


def encode_keepalive(keepalive: Keepalive) -> str:
    return encode_frame(keepalive.token)


def encode_all(packets: List[Envelope]) -> str:
    return "".join(encode_envelope(item) for item in packets)


def is_compressed_payload(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(ZIP_BASE64_MAGIC)


def decompress_payload(value: str) -> Any:
    """Base64 → zip з одним записом → JSON."""

    try:
        blob = base64.b64decode(value, validate=False)
        with zipfile.ZipFile(io.BytesIO(blob)) as archive:
            names = archive.namelist()
            if not names:
                raise ProtocolError("Стиснений payload не містить записів")
            text = archive.read(names[0]).decode("utf-8")
    except (binascii.Error, zipfile.BadZipFile, UnicodeDecodeError, KeyError) as exc:
        raise ProtocolError(f"Не вдалося розпакувати payload: {exc}") from exc
    try:
        return json.loads(text)
    except json.JSONDecodeError as exc:
        raise ProtocolError(f"Розпакований payload не є JSON: {exc}", packet=text) from exc


def _read_digits(data: bytes, start: int) -> Tuple[Optional[int], int]:
    end = start
    size = len(data)
    while end < size and 48 <= data[end] <= 57:
        end += 1
    if end == start:
        return None, start
    return int(data[start:end]), end


def _parse_heartbeat(text: str) -> Optional[Keepalive]:
    digits = text[len(HEARTBEAT_PREFIX):]
    if not digits.isdigit():
        return None
    return Keepalive(int(digits), text)


def _report(
    error: ProtocolError,
    *,
    strict: bool,
    on_error: Optional[ErrorCallback],
    reason: str,
) -> None:
    if strict:
        raise error
    if on_error is not None:
        on_error(error)
    if _should_log_malformed(reason):
        log.warning("Протокол: %s; сегмент пропущено.", error)


def _decode_payload(
    text: str,
    *,
    strict: bool,
    compression: bool,
    on_error: Optional[ErrorCallback],
) -> Optional[Packet]:
    if text.startswith(HEARTBEAT_PREFIX):
        heartbeat = _parse_heartbeat(text)
        if heartbeat is None:
            _report(
                ProtocolError("Некоректний keepalive", packet=text),
                strict=strict,
                on_error=on_error,
                reason="heartbeat",
            )
        return heartbeat

    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as exc:
        _report(
            ProtocolError(f"JSON parse failed: {exc}", packet=text),
            strict=strict,
            on_error=on_error,
            reason="json",
        )
        return None

    if not isinstance(parsed, dict):
        _report(
            ProtocolError("Payload не є JSON-об'єктом", packet=text),
            strict=strict,
            on_error=on_error,
            reason="shape",
        )
        return None

    if "m" not in parsed:
        return ServerInfo(ServerHelloPayload(**parsed))

    raw_params = parsed.get("p")
    params = list(raw_params) if isinstance(raw_params, list) else []
    if compression and len(params) > 1 and is_compressed_payload(params[1]):
        try:
            params[1] = decompress_payload(params[1])
        except ProtocolError as exc:
            _report(exc, strict=strict, on_error=on_error, reason="compressed")
            return None
    return Envelope(str(parsed["m"]), params)


def decode_all(
    raw: Union[str, bytes, bytearray],
    *,
    strict: bool = False,
    compression: bool = True,
    on_error: Optional[ErrorCallback] = None,
) -> List[Packet]:
    """Розбирає транспортний кадр на список пакетів у порядку надходження.

    У нестрогому режимі биті сегменти логуються і пропускаються; у строгому
    перша ж аномалія framing'у або JSON кидає `ProtocolError`.
    """

    data = raw.encode("utf-8") if isinstance(raw, str) else bytes(raw)
    size = len(data)
    packets: List[Packet] = []
    pos = 0

    while pos < size:
        if data.startswith(_HEARTBEAT_BYTES, pos):
            # Голий `~h~N` без обгортки: старі сервери інколи так шлють.
            value, end = _read_digits(data, pos + len(_HEARTBEAT_BYTES))
            if value is not None:
                packets.append(Keepalive(value, data[pos:end].decode("ascii")))
                pos = end
                continue

        if not data.startswith(_DELIM_BYTES, pos):
            _report(
                ProtocolError("Очікувався роздільник кадру", packet=data[pos:pos + 32].decode("utf-8", "replace")),
                strict=strict,
                on_error=on_error,
                reason="delimiter",
            )
            resync = data.find(_DELIM_BYTES, pos + 1)
            if resync < 0:
                break
            pos = resync
            continue

        length, cursor = _read_digits(data, pos + len(_DELIM_BYTES))
        if length is None or not data.startswith(_DELIM_BYTES, cursor):
            _report(
                ProtocolError("Некоректний заголовок довжини кадру"),
                strict=strict,
                on_error=on_error,
                reason="header",
            )
            break

        start = cursor + len(_DELIM_BYTES)
        end = start + length
        aligned = end == size or data.startswith(_DELIM_BYTES, end) or data.startswith(_HEARTBEAT_BYTES, end)
        if end > size or not aligned:
            _report(
                ProtocolError(
                    f"Довжина кадру {length} не збігається з фактичною",
                    packet=data[start:start + 64].decode("utf-8", "replace"),
                ),
                strict=strict,
                on_error=on_error,
                reason="length",
            )
            resync = data.find(_DELIM_BYTES, start)
            if resync < 0:
                break
            pos = resync
            continue

        try:
            text = data[start:end].decode("utf-8")
        except UnicodeDecodeError as exc:
            _report(
                ProtocolError(f"Payload не є utf-8: {exc}"),
                strict=strict,
                on_error=on_error,
                reason="utf8",
            )
            pos = end
            continue

        packet = _decode_payload(text, strict=strict, compression=compression, on_error=on_error)
        if packet is not None:
            packets.append(packet)
        pos = end

    return packets
