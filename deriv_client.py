"""
deriv_client.py -- Deriv WebSocket API v3 client on top of `websockets`.

Handles:
  - Connection setup with a timeout, token authorization
  - Request/response correlation through req_id
  - Streaming subscriptions (ticks, open contracts, balance) with callbacks
  - Explicit unsubscribe-then-close shutdown

HOW A REQUEST FLOWS:
  1. send() stamps a fresh req_id and parks an asyncio Future under it
  2. The reader task decodes every inbound frame (floats as Decimal so
     quotes keep their published width)
  3. Frames carrying a parked req_id resolve that Future; frames carrying a
     known subscription id are handed to that subscription's callback
  4. Broker error payloads are mapped to the errors.py taxonomy

The transport wire format is owned by the broker; this module only speaks it.
"""

from __future__ import annotations

import asyncio
import json
import logging
from decimal import Decimal
from typing import Any, Callable

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

import config
from errors import (
    AuthError,
    DataError,
    FeedConnectionError,
    FeedError,
    from_broker_error,
)
from redact import mask_secrets

logger = logging.getLogger(__name__)

SubscriptionCallback = Callable[[dict], None]

# Request keys that name the message type of a request (first match wins).
_REQUEST_TYPES = (
    "authorize",
    "ticks_history",
    "ticks",
    "proposal_open_contract",
    "proposal",
    "buy",
    "balance",
    "forget_all",
    "forget",
    "active_symbols",
    "contracts_for",
    "ping",
)


def decode_message(raw: str | bytes) -> dict:
    """Decode one frame; JSON floats become Decimal to keep trailing zeros."""
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    msg = json.loads(raw, parse_float=Decimal)
    if not isinstance(msg, dict):
        raise DataError("frame is not a JSON object")
    return msg


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"not JSON serializable: {type(value).__name__}")


def request_type(request: dict) -> str:
    for key in _REQUEST_TYPES:
        if key in request:
            return key
    return ""


class DerivClient:
    """
    One websocket connection to the broker.

    Owned by a single TradingSession; every coroutine here runs on that
    session's event loop.
    """

    def __init__(
        self,
        app_id: str | None = None,
        token: str | None = None,
        url: str | None = None,
        *,
        request_timeout: float | None = None,
        connect_timeout: float | None = None,
        connector: Callable[..., Any] | None = None,
    ) -> None:
        self.app_id = str(app_id or config.DERIV_APP_ID)
        self.token = token if token is not None else config.DERIV_API_TOKEN
        self.url = url or config.WS_URL
        self.request_timeout = float(request_timeout or config.REQUEST_TIMEOUT_SEC)
        self.connect_timeout = float(connect_timeout or config.CONNECT_TIMEOUT_SEC)
        self._connector = connector or websockets.connect

        self._ws: Any = None
        self._reader: asyncio.Task | None = None
        self._next_req_id = 0
        self._pending: dict[int, tuple[asyncio.Future, str]] = {}
        self._subscriptions: dict[str, SubscriptionCallback] = {}
        self._subscription_kinds: dict[str, str] = {}
        self._connect_lock = asyncio.Lock()

        self.authorized = False
        self.account: dict = {}

    # ------------------ Connection ------------------

    @property
    def endpoint(self) -> str:
        sep = "&" if "?" in self.url else "?"
        return f"{self.url}{sep}app_id={self.app_id}"

    @property
    def connected(self) -> bool:
        return self._ws is not None and self._reader is not None and not self._reader.done()

    async def connect(self) -> None:
        """Open the transport (idempotent) and authorize if a token is set."""
        async with self._connect_lock:
            if self.connected:
                return
            try:
                self._ws = await asyncio.wait_for(
                    self._connector(self.endpoint, ping_interval=30, ping_timeout=10),
                    timeout=self.connect_timeout,
                )
            except asyncio.TimeoutError as e:
                raise FeedConnectionError(
                    f"connect timed out after {self.connect_timeout:.0f}s", code="Timeout"
                ) from e
            except (OSError, WebSocketException) as e:
                raise FeedConnectionError(f"cannot open {self.url}: {e}") from e

            self._reader = asyncio.get_running_loop().create_task(
                self._read_loop(), name="deriv-reader"
            )
            logger.info("Connected to %s", self.url)

        if self.token and not self.authorized:
            await self.authorize(self.token)

    async def authorize(self, token: str | None = None) -> dict:
        token = token or self.token
        if not token:
            raise AuthError("no API token configured", code="AuthorizationRequired")
        try:
            resp = await self.send({"authorize": token})
        except AuthError:
            self.authorized = False
            raise
        except FeedError as e:
            if isinstance(e, FeedConnectionError):
                raise
            raise AuthError(str(e), code=e.code, payload=e.payload) from e
        self.token = token
        self.authorized = True
        self.account = dict(resp.get("authorize") or {})
        logger.info(
            "Authorized %s (%s, virtual=%s)",
            self.account.get("loginid", "?"),
            self.account.get("currency", "?"),
            bool(self.account.get("is_virtual")),
        )
        return self.account

    async def close(self) -> None:
        """
        Unsubscribe every active stream, then close the transport.

        The close runs even if an unsubscribe fails.
        """
        try:
            await self.forget_subscriptions()
        finally:
            await self._close_transport()

    async def forget_subscriptions(self) -> None:
        for sub_id in list(self._subscriptions):
            if not self.connected:
                break
            try:
                await self.forget(sub_id)
            except FeedError as e:
                logger.warning("forget %s failed: %s", sub_id, e)
        self._subscriptions.clear()
        self._subscription_kinds.clear()

    async def _close_transport(self) -> None:
        ws, self._ws = self._ws, None
        reader, self._reader = self._reader, None
        self.authorized = False
        if ws is not None:
            try:
                await ws.close()
            except (OSError, WebSocketException) as e:
                logger.debug("close raised %s", e)
        if reader is not None and not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        self._fail_pending(FeedConnectionError("connection closed", code="Closed"))
        logger.info("Disconnected from %s", self.url)

    def _fail_pending(self, exc: Exception) -> None:
        pending, self._pending = self._pending, {}
        for fut, _msg_type in pending.values():
            if not fut.done():
                fut.set_exception(exc)

    # ------------------ Inbound ------------------

    async def _read_loop(self) -> None:
        try:
            async for raw in self._ws:
                try:
                    msg = decode_message(raw)
                except (ValueError, DataError) as e:
                    logger.warning("Dropping undecodable frame: %s", e)
                    continue
                self._dispatch(msg)
        except ConnectionClosed as e:
            logger.warning("Feed connection closed: %s", e)
        finally:
            self._fail_pending(FeedConnectionError("connection lost", code="Closed"))

    def _dispatch(self, msg: dict) -> None:
        req_id = msg.get("req_id")
        if isinstance(req_id, int) and req_id in self._pending:
            fut, msg_type = self._pending.pop(req_id)
            if fut.done():
                return
            if msg.get("error"):
                fut.set_exception(from_broker_error(msg["error"], msg_type))
            else:
                fut.set_result(msg)
            return

        sub_id = (msg.get("subscription") or {}).get("id")
        callback = self._subscriptions.get(sub_id) if sub_id else None
        if callback is None:
            if msg.get("error"):
                logger.warning("Unsolicited broker error: %s", msg["error"])
            return
        if msg.get("error"):
            logger.warning("Stream %s error: %s", sub_id, msg["error"])
            return
        try:
            callback(msg)
        except Exception:
            # One bad consumer must not kill the reader for every stream.
            logger.exception("Subscription %s callback failed", sub_id)

    # ------------------ Outbound ------------------

    async def send(self, request: dict, timeout: float | None = None) -> dict:
        """Send one request and wait for the correlated response."""
        if not self.connected:
            raise FeedConnectionError("not connected", code="NotConnected")
        self._next_req_id += 1
        req_id = self._next_req_id
        msg_type = request_type(request)
        message = {**request, "req_id": req_id}
        fut = asyncio.get_running_loop().create_future()
        self._pending[req_id] = (fut, msg_type)

        logger.debug("-> %s", mask_secrets(message))
        try:
            await self._ws.send(json.dumps(message, default=_json_default))
        except (ConnectionClosed, OSError) as e:
            self._pending.pop(req_id, None)
            raise FeedConnectionError(f"send failed: {e}") from e

        try:
            return await asyncio.wait_for(fut, timeout=timeout or self.request_timeout)
        except asyncio.TimeoutError as e:
            self._pending.pop(req_id, None)
            raise FeedConnectionError(f"{msg_type or 'request'} timed out", code="Timeout") from e

    async def subscribe(self, request: dict, callback: SubscriptionCallback) -> str:
        """
        Open a stream and route every message (first one included) to *callback*.

        Returns the broker's subscription id.
        """
        resp = await self.send({**request, "subscribe": 1})
        sub_id = (resp.get("subscription") or {}).get("id")
        if not sub_id:
            raise DataError(f"no subscription id in {resp.get('msg_type', '?')} response")
        self._subscriptions[sub_id] = callback
        self._subscription_kinds[sub_id] = request_type(request)
        callback(resp)
        return sub_id

    async def forget(self, sub_id: str) -> bool:
        self._subscriptions.pop(sub_id, None)
        self._subscription_kinds.pop(sub_id, None)
        resp = await self.send({"forget": sub_id})
        return bool(resp.get("forget"))

    async def forget_all(self, kinds: list[str]) -> None:
        await self.send({"forget_all": list(kinds)})
        for sub_id, kind in list(self._subscription_kinds.items()):
            if kind in kinds:
                self._subscriptions.pop(sub_id, None)
                self._subscription_kinds.pop(sub_id, None)

    @property
    def active_subscriptions(self) -> dict[str, str]:
        return dict(self._subscription_kinds)

    # ===========================================================================
    # API METHODS
    # ===========================================================================

    async def subscribe_ticks(self, symbol: str, callback: SubscriptionCallback) -> str:
        return await self.subscribe({"ticks": symbol}, callback)

    async def ticks_history(self, symbol: str, count: int = 100) -> dict:
        """
        Fetch the latest *count* ticks for *symbol*.

        Returns {"prices": [Decimal...], "times": [int...], "pip_size": int|None}.
        """
        resp = await self.send({
            "ticks_history": symbol,
            "count": int(count),
            "end": "latest",
            "style": "ticks",
        })
        history = resp.get("history") or {}
        prices = history.get("prices")
        if not isinstance(prices, list):
            raise DataError(f"no price history for {symbol}")
        times = history.get("times") or []
        pip_size = resp.get("pip_size")
        return {
            "prices": prices,
            "times": [int(t) for t in times],
            "pip_size": int(pip_size) if pip_size is not None else None,
        }

    async def active_symbols(self) -> list[dict]:
        resp = await self.send({"active_symbols": "brief", "product_type": "basic"})
        return list(resp.get("active_symbols") or [])

    async def proposal(self, params: dict) -> dict:
        resp = await self.send({"proposal": 1, **params})
        return dict(resp.get("proposal") or {})

    async def buy(self, proposal_id: str, price: Any) -> dict:
        resp = await self.send({"buy": proposal_id, "price": price})
        return dict(resp.get("buy") or {})

    async def subscribe_contract(self, contract_id: int, callback: SubscriptionCallback) -> str:
        return await self.subscribe(
            {"proposal_open_contract": 1, "contract_id": int(contract_id)}, callback
        )

    async def subscribe_balance(self, callback: SubscriptionCallback) -> str:
        return await self.subscribe({"balance": 1}, callback)
