"""
session.py -- One automated trading session (strategy x market).

TradingSession wires the pipeline together and drives it from the
martingale reducer's actions:

  ticks -> TickFeed buffer -> digit_stats snapshot -> strategy Signal
        -> executor TradeResult -> journal + StakeController

Timers (analysis window, spacing between trades) are asyncio tasks owned
by the session.  stop() cancels them, waits for a contract that is already
placed to settle and be booked, then unsubscribes and closes the transport,
on every exit path.

SessionEvents is a small synchronous observer: handlers for one event all
run, in registration order, before emit() returns.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable

import config
import martingale as mg
from deriv_client import DerivClient
from digit_stats import AnalysisSnapshot, snapshot_from_ticks
from errors import FeedError
from executor import TradeRequest, build_executor
from journal import TradingJournal
from local_store import LocalStore
from strategies import Signal, build_registry, get_strategy
from tick_feed import Tick, TickFeed

logger = logging.getLogger(__name__)

STARTED = "started"
STOPPED = "stopped"
TRADE_EXECUTED = "trade_executed"
TARGET_REACHED = "target_reached"
MAX_LOSS_REACHED = "max_loss_reached"
MAX_TRADES_REACHED = "max_trades_reached"
ANALYSIS_STARTED = "analysis_started"
ANALYSIS_COMPLETE = "analysis_complete"

_STOP_EVENTS = {
    mg.STOP_TARGET_PROFIT: TARGET_REACHED,
    mg.STOP_MAX_LOSS: MAX_LOSS_REACHED,
    mg.STOP_MAX_TRADES: MAX_TRADES_REACHED,
}

Handler = Callable[..., None]


class SessionEvents:
    EVENTS = frozenset({
        STARTED, STOPPED, TRADE_EXECUTED, TARGET_REACHED, MAX_LOSS_REACHED,
        MAX_TRADES_REACHED, ANALYSIS_STARTED, ANALYSIS_COMPLETE,
    })

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {name: [] for name in self.EVENTS}

    def on(self, event: str, handler: Handler) -> None:
        if event not in self.EVENTS:
            raise ValueError(f"unknown session event {event!r}")
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Handler) -> None:
        handlers = self._handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)

    def emit(self, event: str, **payload: Any) -> None:
        for handler in list(self._handlers.get(event, [])):
            try:
                handler(**payload)
            except Exception:
                logger.exception("Handler for %s failed", event)


class TradingSession:
    def __init__(
        self,
        market: str,
        strategy: str | None = None,
        *,
        client=None,
        feed: TickFeed | None = None,
        executor=None,
        controller: mg.StakeController | None = None,
        journal: TradingJournal | None = None,
        store: LocalStore | None = None,
        events: SessionEvents | None = None,
        session_config: mg.SessionConfig | None = None,
        registry: dict | None = None,
        mode: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.market = market
        self.strategy_name = (strategy or config.DEFAULT_STRATEGY).strip().upper()
        self.strategy = get_strategy(self.strategy_name, registry or build_registry())
        self.mode = (mode or config.EXECUTION_MODE).strip().lower()
        self.store = store if store is not None else LocalStore()
        self.client = client if client is not None else (feed.client if feed is not None else DerivClient())
        self.feed = feed or TickFeed(self.client, store=self.store)
        self.executor = executor or build_executor(self.mode, self.client)
        self.controller = controller or mg.StakeController(self.store)
        self.controller.configure(self.strategy_name, market, session_config)
        self.journal = journal or TradingJournal(config.JOURNAL_NAME, store=self.store)
        self.events = events or SessionEvents()
        self._clock = clock

        self._tasks: set[asyncio.Task] = set()
        self._in_flight: asyncio.Task | None = None
        self._tick_arrived = asyncio.Event()
        self._stopped = asyncio.Event()
        self._stopping = False
        self.last_snapshot: AnalysisSnapshot | None = None
        self.last_signal: Signal | None = None

    # ------------------ Views ------------------

    @property
    def state(self) -> mg.SessionState:
        return self.controller.state(self.strategy_name, self.market)

    @property
    def running(self) -> bool:
        return self.state.phase in ("ANALYZING", "TRADING") and not self._stopping

    def snapshot(self) -> AnalysisSnapshot:
        self.last_snapshot = snapshot_from_ticks(self.feed.buffer(self.market).ticks())
        return self.last_snapshot

    def current_signal(self) -> Signal:
        self.last_signal = self.strategy.analyze(self.feed.digits(self.market))
        return self.last_signal

    def status(self) -> dict[str, Any]:
        st = self.state
        return {
            "market": self.market,
            "strategy": self.strategy_name,
            "mode": self.mode,
            "phase": st.phase,
            "stake": st.current_stake,
            "consecutive_losses": st.consecutive_losses,
            "profit": round(st.session_profit, 2),
            "trades": st.trades_executed,
            "wins": st.wins,
            "losses": st.losses,
            "stop_reason": st.stop_reason,
            "ticks": len(self.feed.buffer(self.market)),
        }

    # ------------------ Lifecycle ------------------

    async def start(self) -> None:
        """Connect, warm the buffer and enter the analysis window."""
        self.store.evict_stale()
        self.feed.restore(self.market)
        self.feed.add_listener(self._on_tick)
        await self.feed.connect(self.market)
        try:
            await self.feed.load_history(self.market)
        except FeedError as e:
            logger.warning("History for %s unavailable (%s) -- streaming only", self.market, e)

        if self.mode != "live":
            logger.warning("SIMULATION MODE: results are generated locally, not by the broker")
        actions = self.controller.apply(self.strategy_name, self.market, mg.Start(self._clock()))
        self.events.emit(STARTED, session=self, status=self.status())
        self._handle(actions)

    async def run(self) -> None:
        """start() and wait until the session stops; always cleans up."""
        try:
            await self.start()
            await self._stopped.wait()
        finally:
            await self.stop("shutdown")

    async def wait_stopped(self) -> None:
        await self._stopped.wait()

    async def stop(self, reason: str = mg.STOP_MANUAL) -> None:
        if self._stopping:
            return
        self._stopping = True
        current = asyncio.current_task()
        try:
            self.controller.apply(self.strategy_name, self.market, mg.Stop(self._clock(), reason))
            in_flight = self._in_flight
            pending = [
                t for t in self._tasks
                if t is not current and t is not in_flight and not t.done()
            ]
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
            if in_flight is not None and in_flight is not current and not in_flight.done():
                await self._settle_in_flight(in_flight)
        finally:
            self._tasks.clear()
            self.feed.remove_listener(self._on_tick)
            try:
                await self.feed.disconnect()
            except FeedError as e:
                logger.warning("Disconnect failed: %s", e)
            st = self.state
            logger.info(
                "Session %s/%s stopped (%s): %d trades, %d W / %d L, profit %+.2f",
                self.strategy_name, self.market, st.stop_reason or reason,
                st.trades_executed, st.wins, st.losses, st.session_profit,
            )
            self.events.emit(STOPPED, session=self, reason=st.stop_reason or reason, status=self.status())
            self._stopped.set()

    async def _settle_in_flight(self, task: asyncio.Task) -> None:
        """Let a contract that is already placed settle and be booked."""
        timeout = float(getattr(self.executor, "settlement_timeout", config.SETTLEMENT_TIMEOUT_SEC))
        logger.info("Waiting up to %.0fs for the open %s contract to settle", timeout, self.market)
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout + 5.0)
        except asyncio.TimeoutError:
            logger.warning("Open contract on %s did not settle before shutdown", self.market)
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    # ------------------ Reducer actions ------------------

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _handle(self, actions: list) -> None:
        for action in actions:
            if isinstance(action, mg.ScheduleAnalysisAction):
                self.events.emit(ANALYSIS_STARTED, session=self, seconds=action.seconds)
                self._spawn(self._analysis_window(action.seconds), "analysis-window")
            elif isinstance(action, mg.RequestTradeAction):
                self._spawn(self._trade_after(action.delay_sec, action.stake), "next-trade")
            elif isinstance(action, mg.StopAction):
                event = _STOP_EVENTS.get(action.reason)
                if event:
                    self.events.emit(event, session=self, status=self.status())
                if not self._stopping:
                    asyncio.get_running_loop().create_task(self.stop(action.reason), name="session-stop")

    def _apply(self, event) -> None:
        self._handle(self.controller.apply(self.strategy_name, self.market, event))

    async def _analysis_window(self, seconds: float) -> None:
        logger.info("Analyzing %s for %.0fs before trading", self.market, seconds)
        await asyncio.sleep(seconds)
        snap = self.snapshot()
        sig = self.current_signal()
        self.journal.record_analysis(self.market, self.strategy_name, {
            "ticks": snap.total_ticks,
            "bias": snap.bias_direction,
            "bias_strength": round(snap.bias_strength, 2),
            "signal": sig.status,
        })
        self.events.emit(ANALYSIS_COMPLETE, session=self, snapshot=snap, signal=sig)
        self._apply(mg.AnalysisElapsed(self._clock()))

    # ------------------ Trading ------------------

    def _on_tick(self, tick: Tick) -> None:
        if tick.symbol == self.market:
            self._tick_arrived.set()

    async def _next_tick(self) -> None:
        self._tick_arrived.clear()
        await self._tick_arrived.wait()

    async def _await_entry(self) -> Signal:
        """Re-evaluate the strategy on every tick until it says TRADE_NOW."""
        while True:
            sig = self.current_signal()
            if sig.actionable:
                return sig
            logger.debug("%s/%s: %s -- %s", self.strategy_name, self.market, sig.status, sig.reason)
            await self._next_tick()

    async def _trade_after(self, delay: float, stake: float) -> None:
        if delay > 0:
            await asyncio.sleep(delay)
        sig = await self._await_entry()
        request = TradeRequest(
            market=self.market,
            contract_type=sig.recommended_side,
            stake=stake,
            duration=config.CONTRACT_DURATION,
            strategy=self.strategy_name,
            barrier=sig.barrier,
            currency=config.CURRENCY,
        )
        logger.info(
            "%s/%s: %s (%.1f%%) -> %s stake %.2f",
            self.strategy_name, self.market, sig.reason, sig.probability,
            request.contract_type, stake,
        )
        # stop() lets this task finish instead of cancelling it
        self._in_flight = asyncio.current_task()
        try:
            result = await self.executor.execute_trade(request)
        except FeedError as e:
            logger.warning("Trade on %s failed (%s): %s", self.market, e.code or type(e).__name__, e)
            self._apply(mg.TradeFailed(str(e), self._clock()))
            return
        finally:
            self._in_flight = None

        self.journal.record_trade(result, request)
        self.events.emit(TRADE_EXECUTED, session=self, request=request, result=result)
        self._apply(mg.Settlement(result.won, result.profit, self._clock()))
