"""Signed REST client for the Aster futures API.

Every authenticated request carries ``timestamp`` (local clock plus the last
measured server offset) and ``recvWindow``; parameters are sorted by key,
URL-encoded and signed with HMAC-SHA256 using the API secret. GET/DELETE send
the signed string as the query, POST/PUT send it as a form body. The API key
travels in the ``X-MBX-APIKEY`` header.

The client never retries on its own except once after a clock re-sync when the
exchange rejects a timestamp; everything else is left to the caller's next
tick (see ``RetryPolicy``).
"""
import hashlib
import hmac
import math
import time
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Union
from urllib.parse import quote

import httpx
import structlog
from pydantic import ValidationError

from arena.core.config import exchange_config
from arena.core.models import (
    AccountInfo,
    AgentConfig,
    ExchangePosition,
    OrderResult,
    OrderType,
    PositionSide,
    ReconciledFill,
    TimeInForce,
    TradeAction,
    to_decimal,
)

logger = structlog.get_logger(__name__)

API_KEY_HEADER = "X-MBX-APIKEY"
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
USER_AGENT = "arena-trading-engine/1.0"
TIMESTAMP_ERROR_CODE = -1021

# Characters left unescaped, matching JavaScript's encodeURIComponent
_SAFE_CHARS = "-_.!~*'()"


class RetryPolicy(str, Enum):
    """How failed exchange calls are retried.

    NEXT_TICK: the client raises immediately and the runtime tries again after
    exactly one scan interval. The only in-client retry is the single re-sync
    after a timestamp rejection.
    """
    NEXT_TICK = "next_tick"


# =============================================================================
# Errors
# =============================================================================

class ExchangeError(Exception):
    """Base class for exchange client failures."""


class ExchangeConnectionError(ExchangeError):
    """Transport failure or timeout talking to the exchange."""


class MalformedResponseError(ExchangeError):
    """Response body is not JSON or does not match the expected shape."""


class AsterAPIError(ExchangeError):
    """Non-2xx response from the exchange.

    Attributes:
        status: HTTP status code
        code: Exchange error code, if the body carried one
        msg: Exchange error message
    """

    def __init__(self, status: int, code: Optional[int], msg: str):
        self.status = status
        self.code = code
        self.msg = msg
        super().__init__(f"Aster API Error ({status}): {msg}")

    @property
    def is_timestamp_error(self) -> bool:
        """True if the exchange rejected the request timestamp."""
        if self.code == TIMESTAMP_ERROR_CODE:
            return True
        return "Timestamp" in self.msg and "recvWindow" in self.msg


# =============================================================================
# Signing
# =============================================================================

def _format_value(key: str, value: Any) -> str:
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise ValueError(f"Invalid parameter '{key}': {value} is not a finite number")
        return format(value.normalize(), "f")
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"Invalid parameter '{key}': {value} is not a finite number")
        return repr(value)
    return str(value)


def build_query(params: Mapping[str, Any]) -> str:
    """Sorted, URL-encoded ``key=value`` pairs joined by ``&``.

    None values are dropped; non-finite numbers raise ValueError.
    """
    pairs = []
    for key in sorted(params):
        value = params[key]
        if value is None:
            continue
        pairs.append(f"{key}={quote(_format_value(key, value), safe=_SAFE_CHARS)}")
    return "&".join(pairs)


def sign(payload: str, secret: str) -> str:
    """HMAC-SHA256 hex digest of payload."""
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


# =============================================================================
# Reconciliation
# =============================================================================

def reconcile_order(
    order: OrderResult,
    fallback_price: Optional[Decimal] = None,
) -> ReconciledFill:
    """Executed price, quantity and status for an order looked up after placement.

    executed price = cumQuote / executedQty; without a fill it falls back to
    the order's limit price, then to fallback_price.
    """
    if order.executed_qty > 0:
        executed_price = order.cum_quote / order.executed_qty
    elif order.price > 0:
        executed_price = order.price
    else:
        executed_price = fallback_price if fallback_price is not None else Decimal("0")

    return ReconciledFill(
        order_id=order.order_id,
        executed_price=executed_price,
        executed_quantity=order.executed_qty,
        status=order.trade_status,
        reconciled=True,
    )


# =============================================================================
# Client
# =============================================================================

class AsterClient:
    """Async client for one set of Aster API credentials.

    Attributes:
        base_url: API host, e.g. https://fapi.asterdex.com
        recv_window: Accepted timestamp skew in milliseconds
        server_time_offset: serverTime - local time, in milliseconds
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        base_url: Optional[str] = None,
        api_prefix: Optional[str] = None,
        recv_window: Optional[int] = None,
        timeout: Optional[float] = None,
        agent_id: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._api_key = api_key
        self._api_secret = api_secret
        self.base_url = (base_url or exchange_config.api_url).rstrip("/")
        self.api_prefix = api_prefix if api_prefix is not None else exchange_config.api_prefix
        self.recv_window = recv_window or exchange_config.recv_window
        self._clock = clock

        self.server_time_offset = 0
        self._time_synced = False

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or exchange_config.timeout,
            transport=transport,
            headers={"User-Agent": USER_AGENT},
        )
        self.logger = logger.bind(agent_id=agent_id) if agent_id else logger

    @classmethod
    def from_agent(cls, agent: AgentConfig, **kwargs: Any) -> "AsterClient":
        """Client using an agent's REST credentials."""
        client = cls(
            api_key=agent.api_key,
            api_secret=agent.api_secret,
            agent_id=agent.agent_id,
            **kwargs,
        )
        client.logger.info("aster_client.initialized", signer=agent.signer_address)
        return client

    async def __aenter__(self) -> "AsterClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        """Release the underlying HTTP connection pool."""
        await self._client.aclose()
        self.logger.debug("aster_client.closed")

    # =========================================================================
    # Clock
    # =========================================================================

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def timestamp(self) -> int:
        """Local time adjusted by the server offset, in milliseconds."""
        return self._now_ms() + self.server_time_offset

    async def sync_server_time(self) -> int:
        """Measure the offset to the exchange clock.

        A failure keeps the previous offset and only logs a warning.
        """
        try:
            data = await self._request("GET", "/time", signed=False)
            server_time = int(data["serverTime"])
        except (ExchangeError, KeyError, TypeError, ValueError) as e:
            self.logger.warning("aster_client.time_sync_failed", error=str(e))
            return self.server_time_offset

        self.server_time_offset = server_time - self._now_ms()
        self._time_synced = True
        self.logger.info("aster_client.time_synced", offset_ms=self.server_time_offset)
        return self.server_time_offset

    # =========================================================================
    # Transport
    # =========================================================================

    def _path(self, endpoint: str) -> str:
        return f"{self.api_prefix}{endpoint}"

    def sign_params(self, params: Optional[Mapping[str, Any]] = None) -> str:
        """Signed parameter string: query plus ``&signature=<hex>``."""
        payload = dict(params or {})
        payload["timestamp"] = self.timestamp()
        payload["recvWindow"] = self.recv_window
        query = build_query(payload)
        return f"{query}&signature={sign(query, self._api_secret)}"

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: Optional[Mapping[str, Any]] = None,
        signed: bool = True,
        _retried: bool = False,
    ) -> Any:
        if signed and not self._time_synced:
            # One attempt per client; a failed sync keeps the zero offset
            self._time_synced = True
            await self.sync_server_time()

        try:
            return await self._send(method, endpoint, params, signed)
        except AsterAPIError as e:
            if signed and not _retried and e.is_timestamp_error:
                self.logger.warning(
                    "aster_client.timestamp_rejected", endpoint=endpoint, error=e.msg
                )
                await self.sync_server_time()
                return await self._request(method, endpoint, params, signed, _retried=True)
            raise

    async def _send(
        self,
        method: str,
        endpoint: str,
        params: Optional[Mapping[str, Any]],
        signed: bool,
    ) -> Any:
        encoded = self.sign_params(params) if signed else build_query(params or {})
        headers = {API_KEY_HEADER: self._api_key} if signed else {}
        url = self._path(endpoint)
        content = None

        if method in ("GET", "DELETE"):
            if encoded:
                url = f"{url}?{encoded}"
        else:
            headers["Content-Type"] = FORM_CONTENT_TYPE
            content = encoded.encode()

        try:
            response = await self._client.request(method, url, content=content, headers=headers)
        except httpx.HTTPError as e:
            self.logger.error(
                "aster_client.connection_error", method=method, endpoint=endpoint, error=str(e)
            )
            raise ExchangeConnectionError(f"{method} {endpoint} failed: {e}") from e

        return self._handle_response(response, method, endpoint)

    def _handle_response(self, response: httpx.Response, method: str, endpoint: str) -> Any:
        try:
            data = response.json()
        except ValueError:
            snippet = response.text[:200]
            if not response.is_success:
                raise AsterAPIError(response.status_code, None, snippet or response.reason_phrase)
            self.logger.error(
                "aster_client.non_json_response",
                endpoint=endpoint,
                status=response.status_code,
                content_type=response.headers.get("content-type"),
            )
            raise MalformedResponseError(f"Expected JSON from {endpoint}, got: {snippet}")

        if not response.is_success:
            code = data.get("code") if isinstance(data, dict) else None
            msg = data.get("msg") if isinstance(data, dict) else None
            self.logger.warning(
                "aster_client.api_error",
                method=method,
                endpoint=endpoint,
                status=response.status_code,
                code=code,
                msg=msg,
            )
            raise AsterAPIError(response.status_code, code, msg or response.reason_phrase)

        return data

    @staticmethod
    def _parse(model, data: Any, endpoint: str):
        try:
            if isinstance(data, list):
                return [model.model_validate(item) for item in data]
            return model.model_validate(data)
        except ValidationError as e:
            raise MalformedResponseError(f"Unexpected payload from {endpoint}: {e}") from e

    # =========================================================================
    # Account
    # =========================================================================

    async def get_account_info(self) -> AccountInfo:
        """Wallet balance, unrealized PnL and position list."""
        data = await self._request("GET", "/account")
        account = self._parse(AccountInfo, data, "/account")
        self.logger.debug(
            "aster_client.account_fetched",
            equity=str(account.equity),
            positions=len(account.open_positions),
        )
        return account

    async def get_positions(self, symbol: Optional[str] = None) -> List[ExchangePosition]:
        """Open positions, optionally restricted to one symbol."""
        account = await self.get_account_info()
        positions = account.open_positions
        if symbol:
            positions = [p for p in positions if p.symbol == symbol]
        return positions

    # =========================================================================
    # Orders
    # =========================================================================

    async def place_order(
        self,
        symbol: str,
        side: Union[TradeAction, str],
        order_type: Union[OrderType, str],
        quantity: Union[int, Decimal],
        price: Optional[Decimal] = None,
        stop_price: Optional[Decimal] = None,
        time_in_force: Optional[Union[TimeInForce, str]] = None,
        client_order_id: Optional[str] = None,
    ) -> OrderResult:
        """Submit an order.

        Raises:
            ValueError: LIMIT without price, stop orders without stop price,
                or a non-positive quantity
        """
        order_type = OrderType(order_type)
        side = TradeAction(side)
        if side == TradeAction.HOLD:
            raise ValueError("HOLD is not an order side")
        if to_decimal(quantity) <= 0:
            raise ValueError("Order quantity must be positive")
        if order_type == OrderType.LIMIT:
            if price is None:
                raise ValueError("Price is required for limit orders")
            time_in_force = time_in_force or TimeInForce.GTC
        if order_type in (OrderType.STOP_MARKET, OrderType.TAKE_PROFIT_MARKET) and stop_price is None:
            raise ValueError(f"stopPrice is required for {order_type.value} orders")

        params: Dict[str, Any] = {
            "symbol": symbol,
            "side": side,
            "type": order_type,
            "quantity": quantity,
            "price": price if order_type == OrderType.LIMIT else None,
            "stopPrice": stop_price,
            "timeInForce": time_in_force if order_type == OrderType.LIMIT else None,
            "newClientOrderId": client_order_id,
        }

        data = await self._request("POST", "/order", params)
        order = self._parse(OrderResult, data, "/order")
        self.logger.info(
            "aster_client.order_placed",
            symbol=symbol,
            side=side.value,
            order_type=order_type.value,
            quantity=str(quantity),
            price=str(price) if price is not None else None,
            order_id=order.order_id,
            status=order.status,
        )
        return order

    async def get_order(self, symbol: str, order_id: str) -> OrderResult:
        data = await self._request("GET", "/order", {"symbol": symbol, "orderId": order_id})
        return self._parse(OrderResult, data, "/order")

    async def cancel_order(self, symbol: str, order_id: str) -> OrderResult:
        data = await self._request("DELETE", "/order", {"symbol": symbol, "orderId": order_id})
        order = self._parse(OrderResult, data, "/order")
        self.logger.info("aster_client.order_cancelled", symbol=symbol, order_id=order_id)
        return order

    async def get_open_orders(self, symbol: Optional[str] = None) -> List[OrderResult]:
        data = await self._request("GET", "/openOrders", {"symbol": symbol})
        return self._parse(OrderResult, data or [], "/openOrders")

    # =========================================================================
    # Positions
    # =========================================================================

    async def close_position(self, symbol: str, side: Union[PositionSide, str]) -> Dict[str, Any]:
        """Close the whole LONG or SHORT position on a symbol."""
        side = PositionSide(side)
        data = await self._request("POST", "/position/close", {"symbol": symbol, "side": side})
        self.logger.info("aster_client.position_closed", symbol=symbol, side=side.value)
        return data

    async def set_leverage(self, symbol: str, leverage: int) -> Dict[str, Any]:
        data = await self._request("POST", "/leverage", {"symbol": symbol, "leverage": leverage})
        self.logger.info("aster_client.leverage_set", symbol=symbol, leverage=leverage)
        return data


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
