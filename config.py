"""
config.py -- All tunable parameters for the Deriv digit-contract bot.

Every value here is loaded from environment variables so you can configure
the bot from a shell profile (or a local .env file) without touching code.

HOW TO READ THIS FILE:
  Each config value has a comment explaining:
    1. What it controls
    2. What happens if you raise/lower it
    3. The default and why it was chosen
"""

import os
import json as _json
import logging

# ---------------------------------------------------------------------------
# Helper: read an env var with a typed default
# ---------------------------------------------------------------------------

def _env(name, default, cast=str):
    """
    Read an environment variable and cast it to the right type.
    If the var is missing or empty, return *default* (already the right type).
    """
    raw = os.environ.get(name, "")
    if not raw:
        return default
    try:
        # Special handling for booleans -- "true"/"1"/"yes" are all truthy
        if cast is bool:
            return raw.strip().lower() in ("true", "1", "yes")
        return cast(raw)
    except (ValueError, TypeError):
        return default


def _csv(raw: str) -> list:
    return [part.strip() for part in str(raw or "").split(",") if part.strip()]


# ---------------------------------------------------------------------------
# API Credentials  (NEVER hard-code these -- always use env vars)
# ---------------------------------------------------------------------------

# Deriv application id.  Register one at https://api.deriv.com/dashboard
# The public demo id works for market data and demo accounts.
DERIV_APP_ID: str = _env("DERIV_APP_ID", "1089")

# Your Deriv API token (scopes: Read, Trade).  Only needed to place trades;
# tick streaming works anonymously.  It is masked in every log line.
DERIV_API_TOKEN: str = _env("DERIV_API_TOKEN", "")

# WebSocket endpoint.  app_id is appended as a query parameter.
WS_URL: str = _env("WS_URL", "wss://ws.derivws.com/websockets/v3")

# ---------------------------------------------------------------------------
# EXECUTION MODE -- the most important toggle
# ---------------------------------------------------------------------------

# "simulation" (the default!) settles trades with a local random draw.
#   Results are tagged non-authoritative and never presented as real fills.
# "live" sends proposal/buy to the broker and waits for the contract to be
#   sold before counting a result.
EXECUTION_MODE: str = _env("EXECUTION_MODE", "simulation").strip().lower()

# Simulation only: probability that a simulated contract wins, and the
# payout per unit stake (Deriv digit contracts pay roughly 1.95x).
SIM_WIN_PROBABILITY: float = _env("SIM_WIN_PROBABILITY", 0.55, float)
SIM_PAYOUT_RATIO: float = _env("SIM_PAYOUT_RATIO", 1.95, float)

# ---------------------------------------------------------------------------
# Markets & tick ingestion
# ---------------------------------------------------------------------------

# Comma separated Deriv symbols.  R_* are the 2-second volatility indices,
# 1HZ*V the 1-second ones.
MARKETS: list = _csv(_env("MARKETS", "R_100,R_75,R_50,R_25,R_10"))

# Rolling buffer length per symbol.  Every statistic is computed over this
# window.  Raising it: smoother stats, slower reaction.  Lowering it: noisier.
TICK_BUFFER_SIZE: int = _env("TICK_BUFFER_SIZE", 100, int)

# Minimum seconds between two ticks_history fetches for the same symbol.
# Calls inside the window reuse the cached buffer instead of refetching.
HISTORY_COOLDOWN_SEC: float = _env("HISTORY_COOLDOWN_SEC", 60.0, float)

# Pause between sequential history fetches across symbols (avoids the
# broker's per-connection rate limit when warming many markets at once).
HISTORY_FETCH_SPACING_SEC: float = _env("HISTORY_FETCH_SPACING_SEC", 2.0, float)

# Seconds to wait for any single request/response round trip.
REQUEST_TIMEOUT_SEC: float = _env("REQUEST_TIMEOUT_SEC", 30.0, float)

# Seconds allowed to open the websocket before giving up.
CONNECT_TIMEOUT_SEC: float = _env("CONNECT_TIMEOUT_SEC", 15.0, float)

# ---------------------------------------------------------------------------
# Digit statistics
# ---------------------------------------------------------------------------

# Digits >= this are "over", below it "under".  5 splits 0-4 / 5-9.
OVER_UNDER_THRESHOLD: int = _env("OVER_UNDER_THRESHOLD", 5, int)

# ---------------------------------------------------------------------------
# Signal policy (one policy for every two-outcome strategy)
# ---------------------------------------------------------------------------

# Minimum percentage-point gap between the two competing outcomes before a
# strategy turns directional.
SIGNAL_MIN_GAP_PCT: float = _env("SIGNAL_MIN_GAP_PCT", 15.0, float)

# Minimum share of the favoured outcome ("power") before a strategy turns
# directional.
SIGNAL_MIN_POWER_PCT: float = _env("SIGNAL_MIN_POWER_PCT", 55.0, float)

# Opposite outcomes that must precede the latest favoured digit before the
# signal upgrades from WAIT to TRADE_NOW.
SIGNAL_CONFIRM_RUN: int = _env("SIGNAL_CONFIRM_RUN", 2, int)

# Fewest digits a strategy will look at.  Below this every signal is NEUTRAL.
SIGNAL_MIN_SAMPLES: int = _env("SIGNAL_MIN_SAMPLES", 25, int)

# Differs: a digit is "rare" below this share of the window.
DIFFERS_MAX_PCT: float = _env("DIFFERS_MAX_PCT", 10.0, float)

# Differs: the rare digit must be absent from this many latest ticks.
DIFFERS_QUIET_TICKS: int = _env("DIFFERS_QUIET_TICKS", 3, int)

# ---------------------------------------------------------------------------
# Stake sizing & session limits
# ---------------------------------------------------------------------------

# First stake of every martingale ladder (account currency).
BASE_STAKE: float = _env("BASE_STAKE", 1.0, float)

# Highest martingale exponent.  With multiplier 2 and cap 5 the stake never
# exceeds 32x base no matter how long the losing streak.
MARTINGALE_CAP_LEVEL: int = _env("MARTINGALE_CAP_LEVEL", 5, int)

# Absolute stake ceiling.  0 disables the clamp.
MAX_STAKE: float = _env("MAX_STAKE", 0.0, float)

# Session stops once profit reaches this.
TARGET_PROFIT: float = _env("TARGET_PROFIT", 10.0, float)

# Session stops once cumulative losses reach this (positive number).
MAX_LOSS: float = _env("MAX_LOSS", 50.0, float)

# Session stops after this many settled trades.  0 = unlimited.
MAX_TRADES: int = _env("MAX_TRADES", 0, int)

# Length of the warm-up window during which no trades are placed.
ANALYSIS_MINUTES: float = _env("ANALYSIS_MINUTES", 5.0, float)

# Fixed spacing between automated trades.
TRADE_INTERVAL_SEC: float = _env("TRADE_INTERVAL_SEC", 3.0, float)

# What to do when a request fails at the transport level (not a loss):
#   "retry" -- keep trading, give up after MAX_FAILED_REQUESTS in a row
#   "halt"  -- stop the session immediately
FAILURE_POLICY: str = _env("FAILURE_POLICY", "retry").strip().lower()
MAX_FAILED_REQUESTS: int = _env("MAX_FAILED_REQUESTS", 3, int)

# Contract duration in ticks.  Digit contracts need at least 5.
CONTRACT_DURATION: int = _env("CONTRACT_DURATION", 5, int)

# Account currency for proposals.
CURRENCY: str = _env("CURRENCY", "USD")

# Seconds to wait for a bought contract to settle before the outcome is
# treated as ambiguous.
SETTLEMENT_TIMEOUT_SEC: float = _env("SETTLEMENT_TIMEOUT_SEC", 120.0, float)

# Default strategy when none is given on the command line.
DEFAULT_STRATEGY: str = _env("DEFAULT_STRATEGY", "EVEN_ODD").strip().upper()

# Per-strategy martingale multipliers.  Each one reflects that contract's
# payout odds: a 1-in-10 differs loss needs a much steeper recovery than a
# coin-flip even/odd loss.  Override with a JSON object, e.g.
#   STRATEGY_MULTIPLIERS='{"EVEN_ODD": 2.0}'
_DEFAULT_MULTIPLIERS = {
    "EVEN_ODD": 2.1,
    "OVER_UNDER": 2.0,
    "OVER1_UNDER8": 2.0,
    "OVER2_UNDER7": 3.5,
    "OVER3_UNDER6": 2.6,
    "DIFFERS": 12.0,
    "MATCHES": 2.0,
}


def _build_multipliers() -> dict:
    out = dict(_DEFAULT_MULTIPLIERS)
    raw = _env("STRATEGY_MULTIPLIERS", "")
    if not raw:
        return out
    try:
        parsed = _json.loads(raw)
    except ValueError as e:
        logging.getLogger(__name__).warning(
            "STRATEGY_MULTIPLIERS is not valid JSON (%s) -- using defaults", e
        )
        return out
    if not isinstance(parsed, dict):
        return out
    for name, value in parsed.items():
        try:
            mult = float(value)
        except (TypeError, ValueError):
            continue
        if mult >= 1.0:
            out[str(name).strip().upper()] = mult
    return out


STRATEGY_MULTIPLIERS: dict = _build_multipliers()

# ---------------------------------------------------------------------------
# Logging & local persistence
# ---------------------------------------------------------------------------

# Python log level.  DEBUG shows every outbound request (token masked).
LOG_LEVEL: str = _env("LOG_LEVEL", "INFO")

# Directory for the local key-value store (journal, session state, caches).
STATE_DIR: str = _env("STATE_DIR", os.path.join("logs", "state"))

# Market metadata (active_symbols) cache lifetime.
MARKET_CACHE_TTL_SEC: float = _env("MARKET_CACHE_TTL_SEC", 3600.0, float)

# Anything else in the store older than this is evicted on startup.
STALE_DATA_MAX_AGE_SEC: float = _env("STALE_DATA_MAX_AGE_SEC", 86400.0, float)

# Journal name (one journal per name, e.g. per dashboard tab).
JOURNAL_NAME: str = _env("JOURNAL_NAME", "autobot")


# ---------------------------------------------------------------------------
# Startup banner -- printed when the bot launches
# ---------------------------------------------------------------------------

def print_banner():
    """Print a clear summary of all active settings so you know what's running."""
    mode = "SIMULATION (non-authoritative)" if EXECUTION_MODE != "live" else "LIVE TRADING (real money!)"
    lines = [
        "",
        "=" * 60,
        "  DERIV DIGIT BOT",
        "=" * 60,
        f"  Mode:            {mode}",
        f"  Markets:         {', '.join(MARKETS)}",
        f"  Buffer:          {TICK_BUFFER_SIZE} ticks (history cooldown {HISTORY_COOLDOWN_SEC:.0f}s)",
        f"  Base stake:      {BASE_STAKE:.2f} {CURRENCY}",
        f"  Martingale cap:  level {MARTINGALE_CAP_LEVEL}",
        f"  Target profit:   {TARGET_PROFIT:.2f}",
        f"  Max loss:        {MAX_LOSS:.2f}",
        f"  Max trades:      {MAX_TRADES or 'unlimited'}",
        f"  Analysis window: {ANALYSIS_MINUTES:.1f} min",
        f"  Trade spacing:   {TRADE_INTERVAL_SEC:.1f}s",
        f"  Signal policy:   gap>={SIGNAL_MIN_GAP_PCT:.0f}pt, power>={SIGNAL_MIN_POWER_PCT:.0f}%, confirm run {SIGNAL_CONFIRM_RUN}",
        f"  Failure policy:  {FAILURE_POLICY} (max {MAX_FAILED_REQUESTS})",
        f"  Log level:       {LOG_LEVEL}",
        f"  State dir:       {STATE_DIR}",
        f"  API token:       {'configured' if DERIV_API_TOKEN else 'NOT SET'}",
        "=" * 60,
        "",
    ]
    print("\n".join(lines))
