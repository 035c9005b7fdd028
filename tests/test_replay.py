from __future__ import annotations

import unittest

from fakes import FakeClient
from replay_session import ReplaySession
from sessions import SessionState
from tv_errors import ReplayError
from utils import symbol_key


class ReplaySessionTest(unittest.TestCase):
    def setUp(self) -> None:
        self.client = FakeClient()
        self.replay = ReplaySession(self.client, symbol_init={"symbol": "BINANCE:BTCEUR"}, timeframe="D", cursor=1_000)
        self.rid = self.replay.session_id

    def test_create_envelopes(self) -> None:
        self.assertEqual(
            [item[:2] for item in self.client.sent],
            [
                ("replay_create_session", [self.rid]),
                ("replay_add_series", [self.rid, "req_replay_addseries", symbol_key({"symbol": "BINANCE:BTCEUR"}), "D"]),
                ("replay_reset", [self.rid, "req_replay_reset", 1_000]),
            ],
        )

    def test_step_resolves_on_replay_ok(self) -> None:
        future = self.replay.step(3)
        params = self.client.last("replay_step")
        self.assertEqual(params[0], self.rid)
        self.assertEqual(params[2], 3)
        self.client.inject("replay_ok", self.rid, params[1])
        self.assertEqual(future.result(timeout=0), params[1])

    def test_start_from_timestamp_resets_cursor_first(self) -> None:
        self.client.clear()
        future = self.replay.start(2_000, interval_ms=500)
        self.assertEqual(self.client.methods(), ["replay_reset", "replay_start"])
        request_id = self.client.last("replay_start")[1]
        self.assertEqual(self.client.last("replay_start"), [self.rid, request_id, 500])
        self.assertEqual(self.client.last("replay_reset"), [self.rid, f"{request_id}_reset", 2_000])
        self.assertEqual(self.replay.cursor, 2_000)
        self.client.inject("replay_ok", self.rid, request_id)
        self.assertTrue(future.done())

    def test_pause_sends_stop_without_delete(self) -> None:
        self.replay.pause()
        self.assertIn("replay_stop", self.client.methods())
        self.assertNotIn("replay_delete_session", self.client.methods())
        self.assertTrue(self.replay.is_active)

    def test_reset_moves_cursor(self) -> None:
        self.replay.reset(5_000)
        self.assertEqual(self.client.last("replay_reset")[2], 5_000)
        self.assertEqual(self.replay.cursor, 5_000)

    def test_replay_error_fails_request(self) -> None:
        errors: list[BaseException] = []
        self.replay.on_error(errors.append)
        future = self.replay.step()
        request_id = self.client.last("replay_step")[1]
        self.client.inject("replay_error", self.rid, request_id, "no more data")
        self.assertIsInstance(future.exception(timeout=0), ReplayError)
        self.assertEqual(errors[0].correlation_id, request_id)

    def test_stop_deletes_session(self) -> None:
        future = self.replay.stop()
        self.assertTrue(future.done())
        self.assertIn("replay_stop", self.client.methods())
        self.assertTrue(self.client.sent_items("replay_delete_session")[0][3])
        self.assertIs(self.replay.state, SessionState.DELETED)
        self.assertNotIn(self.rid, self.client.registry)

    def test_point_updates_cursor(self) -> None:
        points: list[object] = []
        self.replay.on_point(points.append)
        self.client.inject("replay_point", self.rid, 7_000)
        self.assertEqual(points, [7_000])
        self.assertEqual(self.replay.cursor, 7_000)

    def test_step_validation(self) -> None:
        with self.assertRaises(ValueError):
            self.replay.step(0)

    def test_rehydrate_restores_cursor(self) -> None:
        self.client.inject("replay_point", self.rid, 9_000)
        self.client.clear()
        self.replay.rehydrate()
        self.assertEqual(self.client.methods(), ["replay_create_session", "replay_add_series", "replay_reset"])
        self.assertEqual(self.client.last("replay_reset")[2], 9_000)


if __name__ == "__main__":
    unittest.main()
