"""Exchange integration for the Arena trading engine."""

from arena.exchange.aster_client import (
    AsterAPIError,
    AsterClient,
    ExchangeConnectionError,
    ExchangeError,
    MalformedResponseError,
    RetryPolicy,
    build_query,
    reconcile_order,
    sign,
)

__all__ = [
    "AsterClient",
    "AsterAPIError",
    "ExchangeError",
    "ExchangeConnectionError",
    "MalformedResponseError",
    "RetryPolicy",
    "build_query",
    "sign",
    "reconcile_order",
]
