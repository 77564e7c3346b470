"""Canonical Binance hosts and REST endpoint catalogue."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Market(str, Enum):
    SPOT = "spot"
    USDM = "usdm"


class SecurityType(str, Enum):
    """How a request identifies itself to the exchange."""

    NONE = "NONE"
    API_KEY = "API_KEY"  # X-MBX-APIKEY header only
    SIGNED = "SIGNED"  # header plus timestamp/recvWindow/signature


API_KEY_HEADER = "X-MBX-APIKEY"
USED_WEIGHT_HEADER = "X-MBX-USED-WEIGHT-1M"
ORDER_COUNT_HEADER_PREFIX = "x-mbx-order-count-"

REST_BASE_URLS = {
    Market.SPOT: "https://api.binance.com",
    Market.USDM: "https://fapi.binance.com",
}

# Combined-stream endpoints; topics are attached with SUBSCRIBE messages.
WS_BASE_URLS = {
    Market.SPOT: "wss://stream.binance.com:9443/stream",
    Market.USDM: "wss://fstream.binance.com/stream",
}


@dataclass(frozen=True)
class Endpoint:
    method: str
    path: str
    security: SecurityType = SecurityType.NONE


_KEY = SecurityType.API_KEY
_SIGNED = SecurityType.SIGNED

SPOT_ENDPOINTS: dict[str, Endpoint] = {
    "ping": Endpoint("GET", "/api/v3/ping"),
    "time": Endpoint("GET", "/api/v3/time"),
    "exchange_info": Endpoint("GET", "/api/v3/exchangeInfo"),
    "depth": Endpoint("GET", "/api/v3/depth"),
    "trades": Endpoint("GET", "/api/v3/trades"),
    "historical_trades": Endpoint("GET", "/api/v3/historicalTrades", _KEY),
    "agg_trades": Endpoint("GET", "/api/v3/aggTrades"),
    "klines": Endpoint("GET", "/api/v3/klines"),
    "avg_price": Endpoint("GET", "/api/v3/avgPrice"),
    "ticker_24h": Endpoint("GET", "/api/v3/ticker/24hr"),
    "ticker_price": Endpoint("GET", "/api/v3/ticker/price"),
    "book_ticker": Endpoint("GET", "/api/v3/ticker/bookTicker"),
    "order": Endpoint("POST", "/api/v3/order", _SIGNED),
    "test_order": Endpoint("POST", "/api/v3/order/test", _SIGNED),
    "cancel_order": Endpoint("DELETE", "/api/v3/order", _SIGNED),
    "order_status": Endpoint("GET", "/api/v3/order", _SIGNED),
    "open_orders": Endpoint("GET", "/api/v3/openOrders", _SIGNED),
    "all_orders": Endpoint("GET", "/api/v3/allOrders", _SIGNED),
    "account": Endpoint("GET", "/api/v3/account", _SIGNED),
    "my_trades": Endpoint("GET", "/api/v3/myTrades", _SIGNED),
    "listen_key_start": Endpoint("POST", "/api/v3/userDataStream", _KEY),
    "listen_key_keepalive": Endpoint("PUT", "/api/v3/userDataStream", _KEY),
    "listen_key_close": Endpoint("DELETE", "/api/v3/userDataStream", _KEY),
}

USDM_ENDPOINTS: dict[str, Endpoint] = {
    "ping": Endpoint("GET", "/fapi/v1/ping"),
    "time": Endpoint("GET", "/fapi/v1/time"),
    "exchange_info": Endpoint("GET", "/fapi/v1/exchangeInfo"),
    "depth": Endpoint("GET", "/fapi/v1/depth"),
    "trades": Endpoint("GET", "/fapi/v1/trades"),
    "historical_trades": Endpoint("GET", "/fapi/v1/historicalTrades", _KEY),
    "agg_trades": Endpoint("GET", "/fapi/v1/aggTrades"),
    "klines": Endpoint("GET", "/fapi/v1/klines"),
    "premium_index": Endpoint("GET", "/fapi/v1/premiumIndex"),
    "funding_rate": Endpoint("GET", "/fapi/v1/fundingRate"),
    "ticker_24h": Endpoint("GET", "/fapi/v1/ticker/24hr"),
    "ticker_price": Endpoint("GET", "/fapi/v1/ticker/price"),
    "book_ticker": Endpoint("GET", "/fapi/v1/ticker/bookTicker"),
    "open_interest": Endpoint("GET", "/fapi/v1/openInterest"),
    "order": Endpoint("POST", "/fapi/v1/order", _SIGNED),
    "cancel_order": Endpoint("DELETE", "/fapi/v1/order", _SIGNED),
    "order_status": Endpoint("GET", "/fapi/v1/order", _SIGNED),
    "open_orders": Endpoint("GET", "/fapi/v1/openOrders", _SIGNED),
    "all_orders": Endpoint("GET", "/fapi/v1/allOrders", _SIGNED),
    "account": Endpoint("GET", "/fapi/v2/account", _SIGNED),
    "balance": Endpoint("GET", "/fapi/v2/balance", _SIGNED),
    "position_risk": Endpoint("GET", "/fapi/v2/positionRisk", _SIGNED),
    "change_leverage": Endpoint("POST", "/fapi/v1/leverage", _SIGNED),
    "my_trades": Endpoint("GET", "/fapi/v1/userTrades", _SIGNED),
    "listen_key_start": Endpoint("POST", "/fapi/v1/listenKey", _KEY),
    "listen_key_keepalive": Endpoint("PUT", "/fapi/v1/listenKey", _KEY),
    "listen_key_close": Endpoint("DELETE", "/fapi/v1/listenKey", _KEY),
}

ENDPOINTS: dict[Market, dict[str, Endpoint]] = {
    Market.SPOT: SPOT_ENDPOINTS,
    Market.USDM: USDM_ENDPOINTS,
}


__all__ = [
    "API_KEY_HEADER",
    "ENDPOINTS",
    "Endpoint",
    "Market",
    "ORDER_COUNT_HEADER_PREFIX",
    "REST_BASE_URLS",
    "SPOT_ENDPOINTS",
    "SecurityType",
    "USDM_ENDPOINTS",
    "USED_WEIGHT_HEADER",
    "WS_BASE_URLS",
]
