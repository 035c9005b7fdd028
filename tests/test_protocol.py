"""Тести frame codec: довжина в байтах, кілька повідомлень у кадрі, keepalive, ресинхронізація."""

import base64
import io
import json
import zipfile

import pytest

from tv_errors import ProtocolError
from tv_protocol import (
    Envelope,
    Keepalive,
    ServerInfo,
    decode_all,
    decompress_payload,
    encode_envelope,
    encode_frame,
    encode_keepalive,
    is_compressed_payload,
)


def _zip_b64(payload: object) -> str:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("data.json", json.dumps(payload))
    return base64.b64encode(buffer.getvalue()).decode("ascii")


class TestEncoding:
    def test_frame_length_counts_utf8_bytes(self) -> None:
        assert encode_frame("~h~1") == "~m~4~m~~h~1"
        # "ї" займає два байти в utf-8.
        assert encode_frame("ї") == "~m~2~m~ї"

    def test_envelope_is_compact_json(self) -> None:
        frame = encode_envelope(Envelope("set_auth_token", ["tok"]))
        payload = '{"m":"set_auth_token","p":["tok"]}'
        assert frame == f"~m~{len(payload.encode('utf-8'))}~m~{payload}"

    def test_non_ascii_params_are_not_escaped(self) -> None:
        frame = encode_envelope(Envelope("switch_timezone", ["cs_x", "Europe/Київ"]))
        assert "Київ" in frame
        (packet,) = decode_all(frame)
        assert packet == Envelope("switch_timezone", ["cs_x", "Europe/Київ"])

    def test_keepalive_echo_is_verbatim(self) -> None:
        assert encode_keepalive(Keepalive(3, "~h~3")) == "~m~4~m~~h~3"


class TestDecoding:
    def test_multiple_messages_in_one_frame_keep_order(self) -> None:
        raw = (
            encode_frame('{"session_id":"abc","release":"r1"}')
            + encode_frame("~h~7")
            + encode_envelope(Envelope("qsd", ["qs_1", {"n": "X", "v": {"lp": 1}}]))
        )
        packets = decode_all(raw)
        assert [type(item) for item in packets] == [ServerInfo, Keepalive, Envelope]
        assert packets[0].payload["session_id"] == "abc"
        assert packets[1] == Keepalive(7, "~h~7")
        assert packets[2].method == "qsd"
        assert packets[2].session_id == "qs_1"

    def test_bare_heartbeat_without_wrapper(self) -> None:
        assert decode_all("~h~5") == [Keepalive(5, "~h~5")]

    def test_bytes_input_is_accepted(self) -> None:
        raw = encode_envelope(Envelope("quote_completed", ["qs_1", "X"])).encode("utf-8")
        (packet,) = decode_all(raw)
        assert packet.params == ["qs_1", "X"]

    def test_session_id_only_for_string_first_param(self) -> None:
        assert Envelope("protocol_error", [1, 2]).session_id is None
        assert Envelope("x", []).session_id is None

    def test_length_mismatch_skips_segment_and_resyncs(self) -> None:
        errors = []
        raw = '~m~3~m~{"a":1}' + encode_frame("~h~1")
        packets = decode_all(raw, on_error=errors.append)
        assert packets == [Keepalive(1, "~h~1")]
        assert len(errors) == 1
        assert isinstance(errors[0], ProtocolError)

    def test_truncated_frame_is_dropped(self) -> None:
        errors = []
        assert decode_all("~m~99~m~{}", on_error=errors.append) == []
        assert errors

    def test_strict_mode_raises_on_framing_error(self) -> None:
        with pytest.raises(ProtocolError):
            decode_all("~m~99~m~{}", strict=True)

    def test_invalid_json_is_reported_not_raised(self) -> None:
        errors = []
        raw = encode_frame("abc") + encode_envelope(Envelope("ok", []))
        packets = decode_all(raw, on_error=errors.append)
        assert [packet.method for packet in packets] == ["ok"]
        assert len(errors) == 1

    def test_strict_mode_raises_on_invalid_json(self) -> None:
        with pytest.raises(ProtocolError):
            decode_all(encode_frame("{nope"), strict=True)

    def test_missing_params_become_empty_list(self) -> None:
        (packet,) = decode_all(encode_frame('{"m":"series_loading"}'))
        assert packet == Envelope("series_loading", [])


class TestCompression:
    def test_compressed_params_are_expanded(self) -> None:
        blob = _zip_b64({"$prices": {"s": [{"i": 0, "v": [1, 2, 3, 4, 5, 6]}]}})
        assert is_compressed_payload(blob)
        (packet,) = decode_all(encode_envelope(Envelope("du", ["cs_1", blob])))
        assert packet.params[1]["$prices"]["s"][0]["v"][0] == 1

    def test_compression_can_be_disabled(self) -> None:
        blob = _zip_b64({"a": 1})
        (packet,) = decode_all(encode_envelope(Envelope("du", ["cs_1", blob])), compression=False)
        assert packet.params[1] == blob

    def test_broken_archive_raises_protocol_error(self) -> None:
        with pytest.raises(ProtocolError):
            decompress_payload("UEsDBAAAgarbage")

    def test_broken_archive_in_stream_is_skipped(self) -> None:
        errors = []
        raw = encode_envelope(Envelope("du", ["cs_1", "UEsDBAAAgarbage"]))
        assert decode_all(raw, on_error=errors.append) == []
        assert len(errors) == 1
