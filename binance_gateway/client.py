"""High level Binance endpoint helpers returning :data:`ApiOutcome` values."""

from __future__ import annotations

import time
from typing import Any, Mapping, MutableMapping

import httpx

from .config import Settings, get_settings
from .constants import ENDPOINTS, Market
from .credentials import Credentials
from .outcomes import ApiOutcome, ClientError, Success
from .rest import RequestSpec, RestDispatcher

SYMBOL_NOT_FOUND_CODE = "SYMBOL_NOT_FOUND"
UNSUPPORTED_ENDPOINT_CODE = "UNSUPPORTED_ENDPOINT"
INVALID_SYMBOL_CODE = "INVALID_SYMBOL"


class BinanceClient:
    """Thin asynchronous wrapper around the spot and USD-M REST APIs.

    Every method returns exactly one :data:`ApiOutcome`; nothing raises for
    exchange, transport or argument errors.  Only ``exchange_info`` is cached.
    """

    def __init__(
        self,
        dispatcher: RestDispatcher | None = None,
        *,
        market: Market = Market.SPOT,
        exchange_info_ttl: float = 600.0,
    ) -> None:
        self.market = Market(market)
        self.exchange_info_ttl = exchange_info_ttl
        self._dispatcher = dispatcher or RestDispatcher()
        self._endpoints = ENDPOINTS[self.market]
        self._exchange_info: tuple[float, Success] | None = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        credentials: Credentials | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> "BinanceClient":
        settings = settings or get_settings()
        dispatcher = RestDispatcher.from_settings(settings, credentials=credentials, client=client)
        return cls(dispatcher, market=settings.market, exchange_info_ttl=settings.exchange_info_ttl)

    async def __aenter__(self) -> "BinanceClient":
        await self._dispatcher.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:  # type: ignore[override]
        await self.close()

    async def close(self) -> None:
        await self._dispatcher.close()

    @property
    def dispatcher(self) -> RestDispatcher:
        return self._dispatcher

    @staticmethod
    def _normalise_symbol(symbol: str) -> str:
        """Return a Binance compatible trading symbol (``BTC-USDT`` → ``BTCUSDT``).

        A blank symbol normalises to ``""``, which :meth:`_call` refuses.
        """

        token = (symbol or "").strip().upper()
        for separator in ("-", "/", "_", ":"):
            token = token.replace(separator, "")
        return token

    async def _call(
        self,
        name: str,
        params: Mapping[str, Any] | None = None,
        *,
        idempotent: bool | None = None,
    ) -> ApiOutcome:
        endpoint = self._endpoints.get(name)
        if endpoint is None:
            return ClientError(UNSUPPORTED_ENDPOINT_CODE, f"{name} is not available on the {self.market.value} market")
        if params is not None and params.get("symbol") == "":
            return ClientError(INVALID_SYMBOL_CODE, f"{name} requires a non-empty symbol")
        return await self._dispatcher.send(RequestSpec.for_endpoint(endpoint, params, idempotent=idempotent))

    # ------------------------------------------------------------------
    # General endpoints
    # ------------------------------------------------------------------
    async def ping(self) -> ApiOutcome:
        return await self._call("ping")

    async def server_time(self) -> ApiOutcome:
        return await self._call("time")

    async def sync_time(self) -> ApiOutcome:
        """Synchronise the dispatcher's timestamp offset with the server clock."""

        return await self._dispatcher.sync_time(self._endpoints["time"].path)

    async def exchange_info(self, *, refresh: bool = False) -> ApiOutcome:
        """Return the exchange trading rules, cached for ``exchange_info_ttl`` seconds."""

        now = time.monotonic()
        if not refresh and self.exchange_info_ttl > 0 and self._exchange_info is not None:
            cached_at, outcome = self._exchange_info
            if now - cached_at < self.exchange_info_ttl:
                return outcome
            self._exchange_info = None

        outcome = await self._call("exchange_info")
        if isinstance(outcome, Success):
            self._exchange_info = (now, outcome)
        return outcome

    def clear_exchange_info_cache(self) -> None:
        self._exchange_info = None

    async def symbol_info(self, symbol: str) -> ApiOutcome:
        """Return the ``exchangeInfo`` entry for *symbol*."""

        normalised = self._normalise_symbol(symbol)
        if not normalised:
            return ClientError(INVALID_SYMBOL_CODE, "symbol_info requires a non-empty symbol")
        outcome = await self.exchange_info()
        if not isinstance(outcome, Success):
            return outcome
        payload = outcome.payload if isinstance(outcome.payload, Mapping) else {}
        for entry in payload.get("symbols") or []:
            if isinstance(entry, Mapping) and entry.get("symbol") == normalised:
                return Success(dict(entry), outcome.status_code, outcome.used_weight)
        return ClientError(SYMBOL_NOT_FOUND_CODE, f"Unknown symbol {normalised}")

    # ------------------------------------------------------------------
    # Market data
    # ------------------------------------------------------------------
    async def depth(self, symbol: str, *, limit: int | None = None) -> ApiOutcome:
        return await self._call("depth", {"symbol": self._normalise_symbol(symbol), "limit": limit})

    async def trades(self, symbol: str, *, limit: int | None = None) -> ApiOutcome:
        return await self._call("trades", {"symbol": self._normalise_symbol(symbol), "limit": limit})

    async def historical_trades(
        self, symbol: str, *, limit: int | None = None, from_id: int | None = None
    ) -> ApiOutcome:
        params = {"symbol": self._normalise_symbol(symbol), "limit": limit, "fromId": from_id}
        return await self._call("historical_trades", params)

    async def agg_trades(
        self,
        symbol: str,
        *,
        from_id: int | None = None,
        start_time: int | None = None,
        end_time: int | None = None,
        limit: int | None = None,
    ) -> ApiOutcome:
        params = {
            "symbol": self._normalise_symbol(symbol),
            "fromId": from_id,
            "startTime": start_time,
            "endTime": end_time,
            "limit": limit,
        }
        return await self._call("agg_trades", params)

    async def klines(
        self,
        symbol: str,
        interval: str,
        *,
        start_time: int | None = None,
        end_time: int | None = None,
        limit: int | None = None,
    ) -> ApiOutcome:
        params = {
            "symbol": self._normalise_symbol(symbol),
            "interval": interval,
            "startTime": start_time,
            "endTime": end_time,
            "limit": limit,
        }
        return await self._call("klines", params)

    async def ticker_24h(self, symbol: str | None = None) -> ApiOutcome:
        return await self._call("ticker_24h", self._symbol_params(symbol))

    async def ticker_price(self, symbol: str | None = None) -> ApiOutcome:
        return await self._call("ticker_price", self._symbol_params(symbol))

    async def book_ticker(self, symbol: str | None = None) -> ApiOutcome:
        return await self._call("book_ticker", self._symbol_params(symbol))

    def _symbol_params(self, symbol: str | None) -> dict[str, Any]:
        return {"symbol": self._normalise_symbol(symbol)} if symbol else {}

    # ------------------------------------------------------------------
    # Account and orders
    # ------------------------------------------------------------------
    async def account(self) -> ApiOutcome:
        return await self._call("account")

    async def open_orders(self, symbol: str | None = None) -> ApiOutcome:
        return await self._call("open_orders", self._symbol_params(symbol))

    async def all_orders(
        self,
        symbol: str,
        *,
        order_id: int | None = None,
        start_time: int | None = None,
        end_time: int | None = None,
        limit: int | None = None,
    ) -> ApiOutcome:
        params = {
            "symbol": self._normalise_symbol(symbol),
            "orderId": order_id,
            "startTime": start_time,
            "endTime": end_time,
            "limit": limit,
        }
        return await self._call("all_orders", params)

    def _order_params(
        self,
        symbol: str,
        side: str,
        order_type: str,
        *,
        quantity: Any = None,
        quote_order_qty: Any = None,
        price: Any = None,
        time_in_force: str | None = None,
        client_order_id: str | None = None,
        extra: Mapping[str, Any] | None = None,
    ) -> MutableMapping[str, Any]:
        order_type = order_type.strip().upper()
        params: MutableMapping[str, Any] = {
            "symbol": self._normalise_symbol(symbol),
            "side": side.strip().upper(),
            "type": order_type,
        }
        if time_in_force is None and order_type == "LIMIT":
            time_in_force = "GTC"
        if time_in_force:
            params["timeInForce"] = time_in_force.strip().upper()
        params["quantity"] = quantity
        params["quoteOrderQty"] = quote_order_qty
        params["price"] = price
        params["newClientOrderId"] = client_order_id or None
        if extra:
            params.update(extra)
        return params

    async def place_order(
        self,
        symbol: str,
        side: str,
        order_type: str,
        *,
        quantity: Any = None,
        quote_order_qty: Any = None,
        price: Any = None,
        time_in_force: str | None = None,
        client_order_id: str | None = None,
        **extra: Any,
    ) -> ApiOutcome:
        """Submit a new order.  Never retried automatically."""

        params = self._order_params(
            symbol,
            side,
            order_type,
            quantity=quantity,
            quote_order_qty=quote_order_qty,
            price=price,
            time_in_force=time_in_force,
            client_order_id=client_order_id,
            extra=extra,
        )
        return await self._call("order", params)

    async def test_order(
        self,
        symbol: str,
        side: str,
        order_type: str,
        *,
        quantity: Any = None,
        quote_order_qty: Any = None,
        price: Any = None,
        time_in_force: str | None = None,
        **extra: Any,
    ) -> ApiOutcome:
        """Validate an order without sending it to the matching engine (spot only)."""

        params = self._order_params(
            symbol,
            side,
            order_type,
            quantity=quantity,
            quote_order_qty=quote_order_qty,
            price=price,
            time_in_force=time_in_force,
            extra=extra,
        )
        return await self._call("test_order", params)

    async def cancel_order(
        self,
        symbol: str,
        *,
        order_id: int | None = None,
        client_order_id: str | None = None,
    ) -> ApiOutcome:
        if order_id is None and not client_order_id:
            return ClientError("MISSING_ORDER_ID", "order_id or client_order_id is required")
        params = {
            "symbol": self._normalise_symbol(symbol),
            "orderId": order_id,
            "origClientOrderId": client_order_id or None,
        }
        return await self._call("cancel_order", params)

    async def order_status(
        self,
        symbol: str,
        *,
        order_id: int | None = None,
        client_order_id: str | None = None,
    ) -> ApiOutcome:
        if order_id is None and not client_order_id:
            return ClientError("MISSING_ORDER_ID", "order_id or client_order_id is required")
        params = {
            "symbol": self._normalise_symbol(symbol),
            "orderId": order_id,
            "origClientOrderId": client_order_id or None,
        }
        return await self._call("order_status", params)

    async def my_trades(
        self,
        symbol: str,
        *,
        start_time: int | None = None,
        end_time: int | None = None,
        from_id: int | None = None,
        limit: int | None = None,
    ) -> ApiOutcome:
        params = {
            "symbol": self._normalise_symbol(symbol),
            "startTime": start_time,
            "endTime": end_time,
            "fromId": from_id,
            "limit": limit,
        }
        return await self._call("my_trades", params)

    # ------------------------------------------------------------------
    # USD-M futures extras
    # ------------------------------------------------------------------
    async def balance(self) -> ApiOutcome:
        return await self._call("balance")

    async def position_risk(self, symbol: str | None = None) -> ApiOutcome:
        return await self._call("position_risk", self._symbol_params(symbol))

    async def change_leverage(self, symbol: str, leverage: int) -> ApiOutcome:
        if leverage < 1:
            return ClientError("INVALID_LEVERAGE", "leverage must be >= 1")
        params = {"symbol": self._normalise_symbol(symbol), "leverage": int(leverage)}
        return await self._call("change_leverage", params)

    # ------------------------------------------------------------------
    # User data stream listen keys
    # ------------------------------------------------------------------
    async def start_user_stream(self) -> ApiOutcome:
        """Create a listen key; ``payload["listenKey"]`` names the stream."""

        return await self._call("listen_key_start")

    async def keepalive_user_stream(self, listen_key: str) -> ApiOutcome:
        # Extending a key twice is harmless, so keepalives may be retried.
        return await self._call("listen_key_keepalive", {"listenKey": listen_key}, idempotent=True)

    async def close_user_stream(self, listen_key: str) -> ApiOutcome:
        return await self._call("listen_key_close", {"listenKey": listen_key})


__all__ = ["BinanceClient", "INVALID_SYMBOL_CODE", "SYMBOL_NOT_FOUND_CODE", "UNSUPPORTED_ENDPOINT_CODE"]
