"""Quote-сесія: точкові оновлення (last price, bid/ask, ...) по набору символів.

Гарантії для кожного символу:
    • рівно одна подія `loaded` (після першого повного знімка, `quote_completed`);
    • `data` ніколи не приходить раніше за `loaded`;
    • `qsd` містить дельти, які зливаються в карту полів символу; обробники
      `data` завжди отримують повну поточну карту.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from sessions import EventEmitter, EventHandler, SessionBase
from tv_errors import SymbolError
from tv_schema import QUOTE_FIELD_PROFILES, QuoteDataPayload, validate_quote_data_contract
from utils import parse_symbol_key, quote_symbol_key

log = logging.getLogger("tv_connector.quote")
if not log.handlers:
    log.addHandler(logging.NullHandler())

FieldsSpec = Union[str, Sequence[str]]


def resolve_fields(fields: FieldsSpec) -> Tuple[str, ...]:
    """Профіль (`minimal` | `full`) або явний список полів."""

    if isinstance(fields, str):
        try:
            return QUOTE_FIELD_PROFILES[fields]
        except KeyError:
            raise ValueError(f"Невідомий профіль полів котирувань: {fields}") from None
    resolved = tuple(dict.fromkeys(str(item) for item in fields))
    if not resolved:
        raise ValueError("Список полів котирувань порожній")
    return resolved


class QuoteMarket:
    """Вид на один символ quote-сесії (аналог окремого «ринку»)."""

    def __init__(self, session: "QuoteSession", symbol: str, key: str) -> None:
        self._session = session
        self.symbol = symbol
        self.key = key
        self.loaded = False
        self._fields: Dict[str, Any] = {}
        self.events = EventEmitter(f"{session.session_id}:{symbol}", deliver=getattr(session._client, "deliver", None))

    def __repr__(self) -> str:
        return f"<QuoteMarket {self.symbol} loaded={self.loaded}>"

    @property
    def fields(self) -> Dict[str, Any]:
        return dict(self._fields)

    def on_loaded(self, callback: EventHandler) -> EventHandler:
        return self.events.on("loaded", callback)

    def on_data(self, callback: EventHandler) -> EventHandler:
        return self.events.on("data", callback)

    def on_error(self, callback: EventHandler) -> EventHandler:
        return self.events.on("error", callback)

    def on_event(self, callback: EventHandler) -> EventHandler:
        return self.events.on_event(callback)

    def close(self) -> None:
        self._session.unwatch([self.symbol])


class QuoteSession(SessionBase):
    kind = "quote"
    _HANDLERS = {
        "qsd": "_on_quote_data",
        "quote_completed": "_on_quote_completed",
    }

    def __init__(
        self,
        client: Any,
        *,
        fields: FieldsSpec = "minimal",
        market_session: str = "regular",
        session_id: Optional[str] = None,
    ) -> None:
        self._fields = resolve_fields(fields)
        self._market_session = market_session
        # Порядок вставки зберігаємо: rehydrate повторює add у тому ж порядку.
        self._markets: Dict[str, QuoteMarket] = {}
        self._by_key: Dict[str, QuoteMarket] = {}
        # Види символів створюються в потоці викликача, тому під окремим локом.
        self._views: Dict[str, QuoteMarket] = {}
        self._views_lock = threading.Lock()
        super().__init__(client, session_id=session_id)

    # -- публічне API -------------------------------------------------------
    @property
    def fields(self) -> Tuple[str, ...]:
        return self._fields

    @property
    def symbols(self) -> List[str]:
        return list(self._markets)

    def market(self, symbol: str) -> QuoteMarket:
        """Повертає вид на символ, за потреби додаючи його до спостереження."""

        market = self._view(symbol)
        self._submit(self._watch, [symbol])
        return market

    def watch(self, symbols: Iterable[str]) -> None:
        self._submit(self._watch, list(symbols))

    def unwatch(self, symbols: Iterable[str]) -> None:
        self._submit(self._unwatch, list(symbols))

    def set_symbols(self, symbols: Iterable[str]) -> None:
        self._submit(self._set_symbols, list(symbols))

    def set_fields(self, fields: FieldsSpec) -> None:
        resolved = resolve_fields(fields)
        self._submit(self._set_fields, resolved)

    def on_loaded(self, symbol: str, callback: EventHandler) -> EventHandler:
        return self.market(symbol).on_loaded(callback)

    def on_data(self, symbol: str, callback: EventHandler) -> EventHandler:
        return self.market(symbol).on_data(callback)

    # -- команди (потік циклу) ----------------------------------------------
    def _view(self, symbol: str) -> QuoteMarket:
        with self._views_lock:
            market = self._views.get(symbol)
            if market is None:
                market = QuoteMarket(self, symbol, quote_symbol_key(symbol, self._market_session))
                self._views[symbol] = market
            return market

    def _watch(self, symbols: List[str]) -> None:
        added: List[str] = []
        for symbol in dict.fromkeys(symbols):
            if symbol in self._markets:
                continue
            market = self._view(symbol)
            self._markets[symbol] = market
            self._by_key[market.key] = market
            added.append(market.key)
        if added:
            self._send("quote_add_symbols", [self.session_id, *added])

    def _unwatch(self, symbols: List[str]) -> None:
        removed: List[str] = []
        for symbol in dict.fromkeys(symbols):
            market = self._markets.pop(symbol, None)
            if market is None:
                continue
            self._by_key.pop(market.key, None)
            with self._views_lock:
                self._views.pop(symbol, None)
            removed.append(market.key)
        if removed:
            self._send("quote_remove_symbols", [self.session_id, *removed])

    def _set_symbols(self, symbols: List[str]) -> None:
        wanted = list(dict.fromkeys(symbols))
        stale = [symbol for symbol in self._markets if symbol not in wanted]
        self._unwatch(stale)
        self._watch(wanted)

    def _set_fields(self, fields: Tuple[str, ...]) -> None:
        self._fields = fields
        self._send("quote_set_fields", [self.session_id, *fields])

    def _create_envelopes(self) -> List[Tuple[str, List[Any]]]:
        envelopes: List[Tuple[str, List[Any]]] = [
            ("quote_create_session", [self.session_id]),
            ("quote_set_fields", [self.session_id, *self._fields]),
        ]
        if self._markets:
            keys = [market.key for market in self._markets.values()]
            envelopes.append(("quote_add_symbols", [self.session_id, *keys]))
        return envelopes

    def _delete_envelopes(self) -> List[Tuple[str, List[Any]]]:
        return [("quote_delete_session", [self.session_id])]

    # -- вхідні методи ------------------------------------------------------
    def _lookup(self, key: Any) -> Optional[QuoteMarket]:
        if not isinstance(key, str):
            return None
        market = self._by_key.get(key)
        if market is None:
            market = self._markets.get(parse_symbol_key(key).get("symbol", key))
        return market

    def _on_quote_data(self, params: List[Any]) -> None:
        raw = params[1] if len(params) > 1 else None
        try:
            validate_quote_data_contract(raw)
        except ValueError as exc:
            log.warning("[%s] Пропущено qsd: %s", self.session_id, exc)
            return
        payload = QuoteDataPayload(**raw)
        market = self._lookup(payload.get("n"))
        if market is None:
            log.debug("[%s] qsd для символу поза спостереженням: %s", self.session_id, payload.get("n"))
            return
        if payload.get("s") == "error":
            error = SymbolError(
                f"Помилка котирування {market.symbol}: {payload.get('errmsg') or payload.get('v')}",
                session_id=self.session_id,
                details=payload,
            )
            market.events.emit("error", error)
            self.events.emit("error", error)
            return
        values = payload.get("v")
        if isinstance(values, dict):
            market._fields.update(values)
        if market.loaded:
            snapshot = market.fields
            market.events.emit("data", snapshot)
            self.events.emit("data", market.symbol, snapshot)

    def _on_quote_completed(self, params: List[Any]) -> None:
        market = self._lookup(params[1] if len(params) > 1 else None)
        if market is None or market.loaded:
            return
        market.loaded = True
        snapshot = market.fields
        market.events.emit("loaded", snapshot)
        self.events.emit("loaded", market.symbol, snapshot)
        if snapshot:
            market.events.emit("data", snapshot)
            self.events.emit("data", market.symbol, snapshot)
