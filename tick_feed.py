"""
tick_feed.py -- Live tick ingestion and per-symbol rolling buffers.

Owns one SymbolBuffer per symbol.  Ticks arrive from the broker's `ticks`
stream (or a ticks_history backfill), are reduced to their last digit, and
are appended FIFO to the buffer; the oldest tick falls off once the buffer
is full.

LAST DIGIT:
  The last digit is read from the quote's published fixed-width string,
  not from float arithmetic.  "1234.50" has last digit 0, which a float
  round trip (1234.5) would lose.  Quotes decoded by deriv_client are
  Decimal, so trailing zeros survive; history prices that were published
  without padding are re-padded to the symbol's pip size.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from functools import partial
from typing import Any, Callable

import config
from errors import DataError, FeedError, RateLimitError
from local_store import LocalStore, market_data_key

logger = logging.getLogger(__name__)

TickListener = Callable[["Tick"], None]


@dataclass(frozen=True)
class Tick:
    symbol: str
    price: Decimal
    server_timestamp: int
    last_digit: int
    pip_size: int | None = None


def _quote_text(quote: Any, pip_size: int | None) -> str:
    if isinstance(quote, bool):
        raise DataError(f"invalid quote {quote!r}")
    if isinstance(quote, str):
        return quote.strip()
    if isinstance(quote, float):
        if pip_size is not None:
            return f"{quote:.{int(pip_size)}f}"
        return repr(quote)
    if isinstance(quote, (Decimal, int)):
        dec = Decimal(quote)
        if not dec.is_finite():
            raise DataError(f"invalid quote {quote!r}")
        if pip_size is not None and dec.as_tuple().exponent > -int(pip_size):
            dec = dec.quantize(Decimal(1).scaleb(-int(pip_size)))
        return format(dec, "f")
    raise DataError(f"invalid quote {quote!r}")


def extract_last_digit(quote: Any, pip_size: int | None = None) -> int:
    """
    Last digit of a quote as published.

    Strings are taken verbatim.  Decimal/int quotes with fewer decimals than
    *pip_size* are padded; floats are formatted to *pip_size* decimals.
    """
    text = _quote_text(quote, pip_size).replace(".", "")
    if not text or not text[-1].isdigit():
        raise DataError(f"quote {quote!r} has no trailing digit")
    return int(text[-1])


def _to_decimal(quote: Any, pip_size: int | None) -> Decimal:
    try:
        return Decimal(_quote_text(quote, pip_size))
    except InvalidOperation as e:
        raise DataError(f"invalid quote {quote!r}") from e


def make_tick(symbol: str, quote: Any, epoch: Any = 0, pip_size: Any = None) -> Tick:
    pip = int(pip_size) if pip_size is not None else None
    try:
        stamp = int(epoch or 0)
    except (TypeError, ValueError) as e:
        raise DataError(f"invalid epoch {epoch!r}") from e
    return Tick(
        symbol=str(symbol),
        price=_to_decimal(quote, pip),
        server_timestamp=stamp,
        last_digit=extract_last_digit(quote, pip),
        pip_size=pip,
    )


def parse_tick(payload: dict) -> Tick:
    """Build a Tick from the `tick` object of a stream message."""
    if not isinstance(payload, dict) or payload.get("quote") is None:
        raise DataError("tick payload has no quote")
    return make_tick(
        payload.get("symbol", ""),
        payload["quote"],
        payload.get("epoch", 0),
        payload.get("pip_size"),
    )


class SymbolBuffer:
    """Fixed-capacity FIFO of ticks for one symbol."""

    def __init__(self, symbol: str, capacity: int = 100) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.symbol = symbol
        self.capacity = int(capacity)
        self._ticks: deque[Tick] = deque(maxlen=self.capacity)
        self.last_history_fetch: float | None = None

    def __len__(self) -> int:
        return len(self._ticks)

    def append(self, tick: Tick) -> None:
        self._ticks.append(tick)

    def extend(self, ticks) -> None:
        self._ticks.extend(ticks)

    def clear(self) -> None:
        self._ticks.clear()

    def ticks(self) -> list[Tick]:
        return list(self._ticks)

    def digits(self) -> list[int]:
        return [t.last_digit for t in self._ticks]

    @property
    def last_tick(self) -> Tick | None:
        return self._ticks[-1] if self._ticks else None

    @property
    def pip_size(self) -> int | None:
        last = self.last_tick
        return last.pip_size if last is not None else None


class TickFeed:
    def __init__(
        self,
        client,
        *,
        capacity: int | None = None,
        history_cooldown: float | None = None,
        fetch_spacing: float | None = None,
        store: LocalStore | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.client = client
        self.capacity = int(capacity or config.TICK_BUFFER_SIZE)
        self.history_cooldown = float(
            config.HISTORY_COOLDOWN_SEC if history_cooldown is None else history_cooldown
        )
        self.fetch_spacing = float(
            config.HISTORY_FETCH_SPACING_SEC if fetch_spacing is None else fetch_spacing
        )
        self.store = store
        self._clock = clock
        self._buffers: dict[str, SymbolBuffer] = {}
        self._subscriptions: dict[str, str] = {}
        self._listeners: list[TickListener] = []

    # ------------------ Buffers & listeners ------------------

    def buffer(self, symbol: str) -> SymbolBuffer:
        buf = self._buffers.get(symbol)
        if buf is None:
            buf = SymbolBuffer(symbol, self.capacity)
            self._buffers[symbol] = buf
        return buf

    def digits(self, symbol: str) -> list[int]:
        return self.buffer(symbol).digits()

    @property
    def symbols(self) -> list[str]:
        return list(self._buffers)

    def add_listener(self, fn: TickListener) -> None:
        self._listeners.append(fn)

    def remove_listener(self, fn: TickListener) -> None:
        if fn in self._listeners:
            self._listeners.remove(fn)

    def ingest(self, tick: Tick) -> None:
        self.buffer(tick.symbol).append(tick)
        for fn in list(self._listeners):
            try:
                fn(tick)
            except Exception:
                logger.exception("Tick listener failed for %s", tick.symbol)

    # ------------------ Streaming ------------------

    async def connect(self, symbol: str) -> str:
        """Subscribe to live ticks for *symbol*.  Returns the subscription id."""
        if symbol in self._subscriptions:
            return self._subscriptions[symbol]
        await self.client.connect()
        sub_id = await self.client.subscribe_ticks(symbol, partial(self._on_stream, symbol))
        self._subscriptions[symbol] = sub_id
        logger.info("Streaming ticks for %s (subscription %s)", symbol, sub_id)
        return sub_id

    def _on_stream(self, symbol: str, msg: dict) -> None:
        payload = msg.get("tick")
        if not payload:
            return
        try:
            tick = parse_tick({"symbol": symbol, **payload})
        except DataError as e:
            logger.warning("Dropping malformed tick for %s: %s", symbol, e)
            return
        self.ingest(tick)

    async def disconnect(self, *, close_transport: bool = True) -> None:
        """Forget every tick subscription, then close the transport."""
        try:
            for symbol, sub_id in list(self._subscriptions.items()):
                try:
                    await self.client.forget(sub_id)
                except FeedError as e:
                    logger.warning("Unsubscribe %s failed: %s", symbol, e)
                self._subscriptions.pop(symbol, None)
            for symbol in self._buffers:
                self.persist(symbol)
        finally:
            self._subscriptions.clear()
            if close_transport:
                await self.client.close()

    # ------------------ History ------------------

    def in_cooldown(self, symbol: str) -> bool:
        last = self.buffer(symbol).last_history_fetch
        return last is not None and (self._clock() - last) < self.history_cooldown

    async def load_history(self, symbol: str, count: int | None = None) -> list[Tick]:
        """
        Replace *symbol*'s buffer with the latest ticks_history.

        Inside the per-symbol cooldown (or when the broker rate limits) the
        cached buffer is returned instead; nothing is retried.
        """
        buf = self.buffer(symbol)
        if self.in_cooldown(symbol):
            logger.info(
                "History for %s fetched %.0fs ago -- reusing %d cached ticks",
                symbol, self._clock() - buf.last_history_fetch, len(buf),
            )
            return buf.ticks()

        await self.client.connect()
        try:
            history = await self.client.ticks_history(symbol, count or self.capacity)
        except RateLimitError as e:
            logger.warning("History for %s rate limited (%s) -- using cache", symbol, e)
            return buf.ticks()

        pip_size = history.get("pip_size")
        prices = history.get("prices") or []
        times = history.get("times") or []
        ticks = [
            make_tick(symbol, price, times[i] if i < len(times) else 0, pip_size)
            for i, price in enumerate(prices)
        ]
        buf.clear()
        buf.extend(ticks)
        buf.last_history_fetch = self._clock()
        logger.info("Loaded %d ticks of history for %s", len(buf), symbol)
        self.persist(symbol)
        return buf.ticks()

    async def load_history_many(self, symbols: list[str]) -> dict[str, list[Tick]]:
        """Load history for several symbols in turn; one failure never stops the rest."""
        results: dict[str, list[Tick]] = {}
        for i, symbol in enumerate(symbols):
            if i and self.fetch_spacing > 0 and not self.in_cooldown(symbol):
                await asyncio.sleep(self.fetch_spacing)
            try:
                results[symbol] = await self.load_history(symbol)
            except FeedError as e:
                logger.warning("History for %s failed: %s", symbol, e)
        return results

    # ------------------ Seed / persistence ------------------

    def seed(self, symbol: str, prices: list, *, pip_size: int | None = None, times: list | None = None) -> int:
        """Warm *symbol*'s buffer from cached prices.  Returns the buffer length."""
        times = times or []
        buf = self.buffer(symbol)
        for i, price in enumerate(prices):
            try:
                buf.append(make_tick(symbol, price, times[i] if i < len(times) else 0, pip_size))
            except DataError as e:
                logger.debug("Skipping cached price %r for %s: %s", price, symbol, e)
        return len(buf)

    def snapshot(self, symbol: str) -> dict[str, Any]:
        buf = self.buffer(symbol)
        ticks = buf.ticks()
        return {
            "symbol": symbol,
            "prices": [format(t.price, "f") for t in ticks],
            "times": [t.server_timestamp for t in ticks],
            "pip_size": buf.pip_size,
            "timestamp": time.time(),
        }

    def persist(self, symbol: str) -> None:
        if self.store is None or not len(self.buffer(symbol)):
            return
        self.store.save(market_data_key(symbol), self.snapshot(symbol))

    def restore(self, symbol: str) -> int:
        """Seed from local market data younger than the stale limit.  Returns ticks restored."""
        if self.store is None:
            return 0
        payload = self.store.load(market_data_key(symbol), max_age=config.STALE_DATA_MAX_AGE_SEC)
        if not payload:
            return 0
        prices = payload.get("prices")
        if not isinstance(prices, list):
            return 0
        n = self.seed(symbol, prices, pip_size=payload.get("pip_size"), times=payload.get("times"))
        logger.info("Restored %d cached ticks for %s", n, symbol)
        return n
