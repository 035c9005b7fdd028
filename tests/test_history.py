from __future__ import annotations

import json
import unittest

from config import ClientConfig
from fakes import FakeClient
from history_session import HistoryResult, HistorySession, RequestStatus
from sessions import SessionState
from tv_errors import HistoryError, OperationTimeout
from tv_schema import STRATEGY_SCRIPT_TYPE
from utils import symbol_key

SYMBOL = "BINANCE:BTCUSDT"


def rows(*times: int) -> list:
    return [{"i": idx, "v": [ts, 1.0, 2.0, 0.5, 1.5, 10.0]} for idx, ts in enumerate(times)]


class HistorySessionTest(unittest.TestCase):
    def setUp(self) -> None:
        self.client = FakeClient(ClientConfig(server="history-data", chart_id="abc123", history_timeout=20.0))
        self.session = HistorySession(self.client)
        self.sid = self.session.session_id
        self.events: list[tuple] = []
        self.session.on_event(lambda *args: self.events.append(args))

    def _request_id(self) -> int:
        return self.client.last("request_history_data")[1]

    def _event_names(self) -> list[str]:
        return [item[0] for item in self.events]

    def test_create_session(self) -> None:
        self.assertEqual(self.client.sent[0][:2], ("history_create_session", [self.sid]))
        self.assertTrue(self.sid.startswith("hs_"))

    def test_request_envelope(self) -> None:
        self.session.get_historical_data(SYMBOL, "1h", 1_000, 5_000)
        params = self.client.last("request_history_data")
        self.assertEqual(
            params,
            [
                self.sid,
                params[1],
                symbol_key({"adjustment": "splits", "currency-id": "USD", "session": "regular", "symbol": SYMBOL}),
                "60",
                0,
                {"from_to": {"from": 1_000, "to": 5_000}},
                STRATEGY_SCRIPT_TYPE,
            ],
        )

    def test_partial_then_final_resolves_ordered_periods(self) -> None:
        future = self.session.get_historical_data(SYMBOL, "D", 1_000, 500_000)
        request_id = self._request_id()

        self.client.inject("du", self.sid, request_id, {"series": {"data": rows(300, 400)}})
        self.assertEqual(self.session.request(request_id).status, RequestStatus.STREAMING)
        self.assertFalse(future.done())

        self.client.inject("request_data", self.sid, request_id, {"s": rows(100, 200)})
        periods = future.result(timeout=0)
        self.assertEqual([period.time for period in periods], [100, 200, 300, 400])
        self.assertEqual(self._event_names(), ["data", "loaded", "completed"])
        self.assertEqual(self.events[1][1], {"request_id": request_id, "count": 4})
        self.assertEqual([period.time for period in self.session.periods], [400, 300, 200, 100])

    def test_backtest_returns_report(self) -> None:
        future = self.session.backtest_strategy(SYMBOL, "D", 1_000, 5_000, "strategy('x')")
        params = self.client.last("request_history_data")
        self.assertEqual(params[-1], {"text": "strategy('x')"})
        request_id = params[1]

        report = {"performance": {"all": {"netProfit": 42}}}
        payload = {"s": rows(1_000), "ns": {"d": json.dumps({"data": {"report": report}})}}
        self.client.inject("request_data", self.sid, request_id, payload)

        result = future.result(timeout=0)
        self.assertIsInstance(result, HistoryResult)
        self.assertEqual(result.request_id, request_id)
        self.assertEqual(result.report, report)
        self.assertEqual(self.session.strategy_report, report)
        self.assertIn(("data", {"type": "report", "request_id": request_id, "report": report}), self.events)

    def test_backtest_requires_script(self) -> None:
        with self.assertRaises(ValueError):
            self.session.backtest_strategy(SYMBOL, "D", 1, 2, "")

    def test_backtest_default_timeout_is_doubled(self) -> None:
        future = self.session.backtest_strategy(SYMBOL, "D", 1, 2, "strategy('x')")
        self.client.advance(20.0)
        self.assertFalse(future.done())
        self.client.advance(20.0)
        self.assertIsInstance(future.exception(timeout=0), OperationTimeout)

    def test_request_error_carries_request_id(self) -> None:
        future = self.session.get_historical_data(SYMBOL, "D", 1, 2)
        request_id = self._request_id()
        self.client.inject("request_error", self.sid, request_id, "no data")
        error = future.exception(timeout=0)
        self.assertIsInstance(error, HistoryError)
        self.assertEqual(error.request_id, request_id)
        self.assertEqual(self.session.request(request_id).status, RequestStatus.FAILED)

    def test_broken_report_fails_request(self) -> None:
        future = self.session.request_history_data(SYMBOL, "D", 1, 2)
        request_id = self._request_id()
        self.client.inject("request_data", self.sid, request_id, {"ns": {"d": "{broken"}})
        self.assertIsInstance(future.exception(timeout=0), HistoryError)

    def test_parallel_requests_complete_independently(self) -> None:
        first = self.session.get_historical_data(SYMBOL, "D", 1, 2)
        first_id = self._request_id()
        second = self.session.get_historical_data("BINANCE:ETHUSDT", "D", 1, 2)
        second_id = self._request_id()
        self.assertNotEqual(first_id, second_id)

        self.client.inject("request_data", self.sid, second_id, {"s": rows(10)})
        self.assertTrue(second.done())
        self.assertFalse(first.done())
        self.assertNotIn("completed", self._event_names())

        self.client.inject("request_data", self.sid, first_id, {"s": rows(20)})
        self.assertEqual([period.time for period in first.result(timeout=0)], [20])
        self.assertEqual(self._event_names().count("completed"), 1)

    def test_timeout_then_late_response_is_dropped(self) -> None:
        future = self.session.get_historical_data(SYMBOL, "D", 1, 2, timeout=5)
        request_id = self._request_id()
        self.client.advance(5)
        self.assertIsInstance(future.exception(timeout=0), OperationTimeout)
        self.client.inject("request_data", self.sid, request_id, {"s": rows(10)})
        self.assertNotIn("loaded", self._event_names())

    def test_validation(self) -> None:
        with self.assertRaises(ValueError):
            self.session.get_historical_data("", "D", 1, 2)
        with self.assertRaises(ValueError):
            self.session.get_historical_data(SYMBOL, "D", 10, 5)
        with self.assertRaises(ValueError):
            self.session.get_historical_data(SYMBOL, "D", None, 5)

    def test_critical_error_fails_in_flight_and_deletes(self) -> None:
        future = self.session.get_historical_data(SYMBOL, "D", 1, 2)
        self.client.inject("critical_error", self.sid, "fatal", "history broken")
        self.assertIsInstance(future.exception(timeout=0), HistoryError)
        self.assertIs(self.session.state, SessionState.DELETED)
        self.assertIn("history_delete_session", self.client.methods())

    def test_inactive_session_fails_immediately(self) -> None:
        self.session.delete()
        future = self.session.get_historical_data(SYMBOL, "D", 1, 2)
        self.assertIsInstance(future.exception(timeout=0), HistoryError)

    def test_rehydrate_resends_in_flight_requests(self) -> None:
        done = self.session.get_historical_data(SYMBOL, "D", 1, 2)
        done_id = self._request_id()
        self.client.inject("request_data", self.sid, done_id, {"s": rows(10)})
        pending = self.session.get_historical_data(SYMBOL, "D", 3, 4)
        pending_id = self._request_id()
        self.client.inject("du", self.sid, pending_id, {"s": rows(30)})

        self.client.clear()
        self.session.rehydrate()
        self.assertEqual(self.client.methods(), ["history_create_session", "request_history_data"])
        self.assertEqual(self.client.last("request_history_data")[1], pending_id)
        self.assertEqual(len(self.session.request(pending_id).store), 0)
        self.assertTrue(done.done())
        self.assertFalse(pending.done())

    def test_clear_data_keeps_in_flight(self) -> None:
        self.session.get_historical_data(SYMBOL, "D", 1, 2)
        done_id = self._request_id()
        self.client.inject("request_data", self.sid, done_id, {"s": rows(10)})
        self.session.get_historical_data(SYMBOL, "D", 1, 2)
        pending_id = self._request_id()
        self.session.clear_data()
        self.assertIsNone(self.session.request(done_id))
        self.assertIsNotNone(self.session.request(pending_id))
        self.assertEqual(self.session.periods, [])

    def test_completed_request_releases_its_store(self) -> None:
        first = self.session.get_historical_data(SYMBOL, "D", 1, 2)
        first_id = self._request_id()
        self.client.inject("request_data", self.sid, first_id, {"s": rows(10, 20)})
        second = self.session.get_historical_data(SYMBOL, "D", 3, 4)
        second_id = self._request_id()
        self.client.inject("du", self.sid, second_id, {"s": rows(30)})

        self.assertEqual([period.time for period in first.result(timeout=0)], [10, 20])
        self.assertEqual(len(self.session.request(first_id).store), 0)
        # Бари запиту в польоті ще не потрапили в сесію.
        self.assertEqual([period.time for period in self.session.periods], [20, 10])

        self.client.inject("request_error", self.sid, second_id, "no data")
        self.assertIsInstance(second.exception(timeout=0), HistoryError)
        self.assertEqual(len(self.session.request(second_id).store), 0)
        self.assertEqual([period.time for period in self.session.periods], [20, 10])


class HistoryServerCheckTest(unittest.TestCase):
    def test_history_server_requires_chart_id(self) -> None:
        with self.assertRaises(ValueError):
            ClientConfig(server="history-data")

    def test_other_server_only_warns(self) -> None:
        client = FakeClient()
        with self.assertLogs("tv_connector.history", level="WARNING"):
            HistorySession(client)


if __name__ == "__main__":
    unittest.main()
