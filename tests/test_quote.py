from __future__ import annotations

import unittest

from fakes import FakeClient
from quote_session import QuoteSession, resolve_fields
from tv_errors import SymbolError
from tv_schema import QUOTE_FIELDS_FULL, QUOTE_FIELDS_MINIMAL
from utils import quote_symbol_key

BTC = "BINANCE:BTCUSDT"
ETH = "BINANCE:ETHUSDT"


class QuoteSessionTest(unittest.TestCase):
    def setUp(self) -> None:
        self.client = FakeClient()
        self.session = QuoteSession(self.client)
        self.sid = self.session.session_id
        self.key = quote_symbol_key(BTC)

    def _qsd(self, values: dict, key: str | None = None) -> None:
        self.client.inject("qsd", self.sid, {"n": key or self.key, "s": "ok", "v": values})

    def test_create_sends_session_and_fields(self) -> None:
        self.assertEqual(self.client.methods(), ["quote_create_session", "quote_set_fields"])
        self.assertEqual(self.client.last("quote_set_fields"), [self.sid, *QUOTE_FIELDS_MINIMAL])

    def test_loaded_once_then_data_with_full_snapshot(self) -> None:
        market = self.session.market(BTC)
        self.assertEqual(self.client.last("quote_add_symbols"), [self.sid, self.key])
        events: list[tuple] = []
        market.on_event(lambda *args: events.append(args))

        self._qsd({"lp": 100.0, "ch": 1.0})
        # До quote_completed дані лише накопичуються.
        self.assertEqual(events, [])

        self.client.inject("quote_completed", self.sid, self.key)
        self.assertEqual(
            events,
            [("loaded", {"lp": 100.0, "ch": 1.0}), ("data", {"lp": 100.0, "ch": 1.0})],
        )

        self._qsd({"lp": 101.0})
        self.assertEqual(events[-1], ("data", {"lp": 101.0, "ch": 1.0}))

        self.client.inject("quote_completed", self.sid, self.key)
        self.assertEqual([name for name, *_ in events].count("loaded"), 1)

    def test_session_level_events_carry_symbol(self) -> None:
        loaded: list[tuple] = []
        data: list[tuple] = []
        self.session.on("loaded", lambda symbol, snap: loaded.append((symbol, snap)))
        self.session.on("data", lambda symbol, snap: data.append((symbol, snap)))
        self.session.watch([BTC])
        self.client.inject("quote_completed", self.sid, self.key)
        self._qsd({"bid": 1.0})
        self.assertEqual(loaded, [(BTC, {})])
        self.assertEqual(data, [(BTC, {"bid": 1.0})])

    def test_watch_is_idempotent_union(self) -> None:
        self.session.watch([BTC, BTC])
        self.session.watch([BTC, ETH])
        added = self.client.sent_items("quote_add_symbols")
        self.assertEqual(added[0][1], [self.sid, self.key])
        self.assertEqual(added[1][1], [self.sid, quote_symbol_key(ETH)])
        self.assertEqual(self.session.symbols, [BTC, ETH])

    def test_unwatch_and_set_symbols(self) -> None:
        self.session.watch([BTC, ETH])
        self.session.unwatch([ETH, "NOT:WATCHED"])
        self.assertEqual(self.client.last("quote_remove_symbols"), [self.sid, quote_symbol_key(ETH)])

        self.session.set_symbols([ETH])
        self.assertEqual(self.client.last("quote_remove_symbols"), [self.sid, self.key])
        self.assertEqual(self.client.last("quote_add_symbols"), [self.sid, quote_symbol_key(ETH)])
        self.assertEqual(self.session.symbols, [ETH])

    def test_data_for_unwatched_symbol_is_ignored(self) -> None:
        received: list[tuple] = []
        self.session.on("data", lambda *args: received.append(args))
        self._qsd({"lp": 1.0}, key=quote_symbol_key("OTHER:X"))
        self.assertEqual(received, [])

    def test_bare_ticker_in_payload_is_matched(self) -> None:
        market = self.session.market(BTC)
        self.client.inject("quote_completed", self.sid, self.key)
        self._qsd({"lp": 3.0}, key=BTC)
        self.assertEqual(market.fields, {"lp": 3.0})

    def test_error_status_goes_to_error_channels(self) -> None:
        market = self.session.market(BTC)
        market_errors: list[BaseException] = []
        session_errors: list[BaseException] = []
        market.on_error(market_errors.append)
        self.session.on_error(session_errors.append)
        self.client.inject("qsd", self.sid, {"n": self.key, "s": "error", "errmsg": "invalid symbol"})
        self.assertIsInstance(market_errors[0], SymbolError)
        self.assertIs(session_errors[0], market_errors[0])
        self.assertFalse(market.loaded)

    def test_set_fields_profile(self) -> None:
        self.session.set_fields("full")
        self.assertEqual(self.client.last("quote_set_fields"), [self.sid, *QUOTE_FIELDS_FULL])
        with self.assertRaises(ValueError):
            self.session.set_fields("unknown")

    def test_rehydrate_replays_setup_without_second_loaded(self) -> None:
        market = self.session.market(BTC)
        loaded: list[dict] = []
        market.on_loaded(loaded.append)
        self.client.inject("quote_completed", self.sid, self.key)

        self.client.clear()
        self.session.rehydrate()
        self.assertEqual(
            self.client.methods(),
            ["quote_create_session", "quote_set_fields", "quote_add_symbols"],
        )
        self.client.inject("quote_completed", self.sid, self.key)
        self.assertEqual(len(loaded), 1)

    def test_market_close_unwatches(self) -> None:
        market = self.session.market(BTC)
        market.close()
        self.assertEqual(self.client.last("quote_remove_symbols"), [self.sid, self.key])


class ResolveFieldsTest(unittest.TestCase):
    def test_explicit_list_is_deduplicated(self) -> None:
        self.assertEqual(resolve_fields(["lp", "bid", "lp"]), ("lp", "bid"))

    def test_empty_list_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            resolve_fields([])


if __name__ == "__main__":
    unittest.main()
