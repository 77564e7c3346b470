"""Asynchronous Binance REST and streaming client."""

from .auth import SignedRequest, canonicalize, sign, sign_request
from .backoff import Backoff, BackoffPolicy
from .client import BinanceClient
from .config import Settings, get_settings
from .constants import Endpoint, Market, SecurityType
from .credentials import Credentials
from .errors import (
    ConfigurationError,
    DecodeError,
    GatewayError,
    SessionClosed,
    SigningError,
    SubscriptionRejected,
    TransportFault,
)
from .multiplexer import SubscriptionHandle, SubscriptionMultiplexer
from .outcomes import ApiOutcome, ClientError, ServerFault, Success, Throttled, classify_response
from .rest import RequestSpec, RestDispatcher
from .session import SessionState, StreamSession
from .topics import Frame, StreamTopic
from .user_stream import UserDataStream

__all__ = [
    "ApiOutcome",
    "Backoff",
    "BackoffPolicy",
    "BinanceClient",
    "ClientError",
    "ConfigurationError",
    "Credentials",
    "DecodeError",
    "Endpoint",
    "Frame",
    "GatewayError",
    "Market",
    "RequestSpec",
    "RestDispatcher",
    "SecurityType",
    "ServerFault",
    "SessionClosed",
    "SessionState",
    "Settings",
    "SignedRequest",
    "SigningError",
    "StreamSession",
    "StreamTopic",
    "SubscriptionHandle",
    "SubscriptionMultiplexer",
    "SubscriptionRejected",
    "Success",
    "Throttled",
    "TransportFault",
    "UserDataStream",
    "canonicalize",
    "classify_response",
    "get_settings",
    "sign",
    "sign_request",
]
