"""
Deriv digit bot runtime.

Single-process, single-event-loop runner:
- live tick stream + rolling last-digit statistics
- strategy signals (even/odd, over/under, differs, matches)
- reducer-driven martingale session with target/max-loss stops
- simulated settlement by default, live broker settlement with --live
- --scan prints a one-shot digit analysis for every configured market
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal

import config
import redact
from deriv_client import DerivClient
from digit_stats import snapshot_from_ticks
from errors import AuthError, FeedConnectionError, FeedError
from journal import TradingJournal
from local_store import LocalStore
from session import (
    ANALYSIS_COMPLETE,
    MAX_LOSS_REACHED,
    TARGET_REACHED,
    TRADE_EXECUTED,
    SessionEvents,
    TradingSession,
)
from strategies import analyze_all, build_registry
from tick_feed import TickFeed


logger = logging.getLogger(__name__)


def setup_logging() -> redact.SecretMaskFilter:
    level = getattr(logging, config.LOG_LEVEL.upper(), logging.INFO)
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )
    return redact.install([config.DERIV_API_TOKEN])


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Deriv last-digit statistics and martingale bot")
    p.add_argument("--market", default=(config.MARKETS[0] if config.MARKETS else "R_100"),
                   help="Deriv symbol, e.g. R_100")
    p.add_argument("--strategy", default=config.DEFAULT_STRATEGY,
                   help="EVEN_ODD, OVER_UNDER, OVER1_UNDER8, OVER2_UNDER7, OVER3_UNDER6, DIFFERS, MATCHES")
    mode = p.add_mutually_exclusive_group()
    mode.add_argument("--live", dest="mode", action="store_const", const="live",
                      help="Place real contracts with the broker")
    mode.add_argument("--simulate", dest="mode", action="store_const", const="simulation",
                      help="Settle trades locally (non-authoritative)")
    p.set_defaults(mode=config.EXECUTION_MODE)
    p.add_argument("--token", default="", help="API token (prefer the DERIV_API_TOKEN env var)")
    p.add_argument("--scan", action="store_true", default=False,
                   help="Analyze every configured market once and exit")
    p.add_argument("--journal", action="store_true", default=False,
                   help="Print journal statistics and exit")
    return p.parse_args(argv)


# ---------------------------------------------------------------------------
# Event logging
# ---------------------------------------------------------------------------

def _log_trade(session, request, result) -> None:
    st = session.state
    label = "" if result.authoritative else " [SIMULATED]"
    logger.info(
        "Trade%s %s %s -> %s %+.2f | session %+.2f, %dW/%dL, next stake %.2f",
        label, request.contract_type, request.market, result.result, result.profit,
        st.session_profit, st.wins, st.losses, st.current_stake,
    )


def _log_analysis(session, snapshot, signal) -> None:
    logger.info(
        "Analysis done on %s: %d ticks, bias %s %.1f%%, randomness %.1f%%, signal %s",
        session.market, snapshot.total_ticks, snapshot.bias_direction,
        snapshot.bias_strength, snapshot.randomness_pct, signal.status,
    )


def build_events() -> SessionEvents:
    events = SessionEvents()
    events.on(TRADE_EXECUTED, _log_trade)
    events.on(ANALYSIS_COMPLETE, _log_analysis)
    events.on(TARGET_REACHED, lambda session, status: logger.info("Target profit reached: %s", status))
    events.on(MAX_LOSS_REACHED, lambda session, status: logger.warning("Max loss reached: %s", status))
    return events


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

async def scan_markets(client: DerivClient, store: LocalStore) -> dict:
    """Load history for every configured market and print each strategy's signal."""
    feed = TickFeed(client, store=store)
    registry = build_registry()
    report = {}
    try:
        await client.connect()
        markets = store.load_markets()
        if markets is None:
            markets = await client.active_symbols()
            store.save_markets(markets)
        names = {m.get("symbol"): m.get("display_name", "") for m in markets}

        loaded = await feed.load_history_many(config.MARKETS)
        for symbol, ticks in loaded.items():
            snap = snapshot_from_ticks(ticks)
            signals = analyze_all([t.last_digit for t in ticks], registry)
            report[symbol] = {"snapshot": snap, "signals": signals}
            print(f"\n{symbol} {names.get(symbol, '')}  ({snap.total_ticks} ticks, price {snap.current_price})")
            print(f"  even {snap.even_pct:5.1f}%  odd {snap.odd_pct:5.1f}%  "
                  f"over {snap.over_pct:5.1f}%  under {snap.under_pct:5.1f}%  "
                  f"randomness {snap.randomness_pct:5.1f}%")
            for name, sig in signals.items():
                side = f"{sig.recommended_side or '-'}{'' if sig.barrier is None else ' ' + str(sig.barrier)}"
                print(f"  {name:<13} {sig.status:<9} {side:<13} {sig.probability:5.1f}%  {sig.reason}")
    finally:
        await feed.disconnect()
    return report


def print_journal(store: LocalStore) -> None:
    stats = TradingJournal(config.JOURNAL_NAME, store=store).stats()
    print(
        f"Journal {config.JOURNAL_NAME}: {stats.total_trades} trades, "
        f"{stats.total_wins}W/{stats.total_losses}L ({stats.win_rate:.1f}%), "
        f"profit {stats.total_profit:+.2f} on {stats.total_stake:.2f} staked, {stats.runs} runs"
    )


async def main(args: argparse.Namespace, mask_filter: redact.SecretMaskFilter | None = None) -> int:
    token = args.token or config.DERIV_API_TOKEN
    if mask_filter is not None and token:
        mask_filter.add_secret(token)
    if args.mode == "live" and not token:
        logger.error("Live mode needs DERIV_API_TOKEN (or --token)")
        return 2

    store = LocalStore()
    client = DerivClient(token=token)

    if args.scan:
        await scan_markets(client, store)
        return 0

    session = TradingSession(
        args.market,
        args.strategy,
        client=client,
        store=store,
        events=build_events(),
        mode=args.mode,
    )

    loop = asyncio.get_running_loop()

    def _handle_signal(signum):
        logger.info("Signal %s received", signum)
        loop.create_task(session.stop("signal"))

    for signum in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(signum, _handle_signal, signum)
        except (NotImplementedError, RuntimeError):
            # Windows: no loop signal handlers, fall back to KeyboardInterrupt.
            pass

    try:
        await session.run()
    except AuthError as e:
        logger.error("Authorization failed: %s", e)
        return 3
    except FeedConnectionError as e:
        logger.error("Cannot reach the broker: %s", e)
        return 4
    except FeedError as e:
        logger.exception("Feed error: %s", e)
        return 1
    return 0


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    mask_filter = setup_logging()
    config.print_banner()
    if args.journal:
        print_journal(LocalStore())
        return 0
    try:
        return asyncio.run(main(args, mask_filter))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130


if __name__ == "__main__":
    raise SystemExit(run())
