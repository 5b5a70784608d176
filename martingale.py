"""
martingale.py

Martingale stake controller for one (strategy, market) session.

Design goals:
- Pure reducer transitions: (state, event) -> (next_state, actions)
- Phases IDLE -> ANALYZING -> TRADING -> STOPPED; an explicit Stop reaches
  STOPPED from any phase
- Stake = base * multiplier ** min(consecutive_losses, cap_level), rounded
  to currency cents (so only approximately for non-integer multipliers)
- Stop checks after every settlement, in fixed order:
  target profit, then max loss, then max trades
- Transport failures are a third outcome: they never touch the loss streak
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace
from typing import Literal

import config
from local_store import LocalStore, session_key

logger = logging.getLogger(__name__)

Phase = Literal["IDLE", "ANALYZING", "TRADING", "STOPPED"]

STOP_TARGET_PROFIT = "target_profit"
STOP_MAX_LOSS = "max_loss"
STOP_MAX_TRADES = "max_trades"
STOP_FAILURES = "failures"
STOP_MANUAL = "manual"


@dataclass(frozen=True)
class SessionConfig:
    base_stake: float = 1.0
    multiplier: float = 2.0
    cap_level: int = 5
    max_stake: float = 0.0
    target_profit: float = 10.0
    max_loss: float = 50.0
    max_trades: int = 0
    analysis_sec: float = 300.0
    trade_interval_sec: float = 3.0
    failure_policy: str = "retry"
    max_failed_requests: int = 3

    @classmethod
    def from_config(cls, strategy: str) -> "SessionConfig":
        return cls(
            base_stake=config.BASE_STAKE,
            multiplier=float(config.STRATEGY_MULTIPLIERS.get(strategy, 2.0)),
            cap_level=config.MARTINGALE_CAP_LEVEL,
            max_stake=config.MAX_STAKE,
            target_profit=config.TARGET_PROFIT,
            max_loss=config.MAX_LOSS,
            max_trades=config.MAX_TRADES,
            analysis_sec=config.ANALYSIS_MINUTES * 60.0,
            trade_interval_sec=config.TRADE_INTERVAL_SEC,
            failure_policy=config.FAILURE_POLICY,
            max_failed_requests=config.MAX_FAILED_REQUESTS,
        )


@dataclass(frozen=True)
class SessionState:
    phase: Phase = "IDLE"
    consecutive_losses: int = 0
    current_stake: float = 0.0
    session_profit: float = 0.0
    session_loss_total: float = 0.0
    trades_executed: int = 0
    wins: int = 0
    losses: int = 0
    failed_requests: int = 0
    stop_reason: str = ""
    analysis_started_at: float | None = None
    last_trade_at: float | None = None


# --------------------------- Events ---------------------------


@dataclass(frozen=True)
class Start:
    timestamp: float


@dataclass(frozen=True)
class AnalysisElapsed:
    timestamp: float


@dataclass(frozen=True)
class Settlement:
    won: bool
    profit: float
    timestamp: float


@dataclass(frozen=True)
class TradeFailed:
    error: str
    timestamp: float


@dataclass(frozen=True)
class Stop:
    timestamp: float
    reason: str = STOP_MANUAL


Event = Start | AnalysisElapsed | Settlement | TradeFailed | Stop


# --------------------------- Actions ---------------------------


@dataclass(frozen=True)
class ScheduleAnalysisAction:
    seconds: float


@dataclass(frozen=True)
class RequestTradeAction:
    stake: float
    delay_sec: float = 0.0


@dataclass(frozen=True)
class StopAction:
    reason: str


Action = ScheduleAnalysisAction | RequestTradeAction | StopAction


# --------------------------- Helpers ---------------------------


def stake_for(consecutive_losses: int, cfg: SessionConfig) -> float:
    level = min(max(0, int(consecutive_losses)), max(0, int(cfg.cap_level)))
    stake = cfg.base_stake * (cfg.multiplier ** level)
    if cfg.max_stake > 0:
        stake = min(stake, cfg.max_stake)
    return round(stake, 2)


def stop_reason_after_settlement(state: SessionState, cfg: SessionConfig) -> str:
    """First stop condition that holds, or "" (target profit wins ties)."""
    if cfg.target_profit > 0 and state.session_profit >= cfg.target_profit:
        return STOP_TARGET_PROFIT
    if cfg.max_loss > 0 and state.session_loss_total >= cfg.max_loss:
        return STOP_MAX_LOSS
    if cfg.max_trades > 0 and state.trades_executed >= cfg.max_trades:
        return STOP_MAX_TRADES
    return ""


def check_invariants(state: SessionState, cfg: SessionConfig) -> list[str]:
    violations: list[str] = []
    if state.consecutive_losses < 0:
        violations.append("consecutive_losses must be >= 0")
    if state.phase != "IDLE" and state.current_stake != stake_for(state.consecutive_losses, cfg):
        violations.append("current_stake out of step with consecutive_losses")
    if state.wins + state.losses != state.trades_executed:
        violations.append("wins + losses must equal trades_executed")
    if state.session_loss_total < 0:
        violations.append("session_loss_total must be >= 0")
    if state.phase == "STOPPED" and not state.stop_reason:
        violations.append("STOPPED requires a stop_reason")
    return violations


def to_dict(state: SessionState) -> dict:
    return dict(state.__dict__)


def from_dict(data: dict) -> SessionState:
    phase = str(data.get("phase", "IDLE"))
    if phase not in ("IDLE", "ANALYZING", "TRADING", "STOPPED"):
        phase = "IDLE"
    return SessionState(
        phase=phase,
        consecutive_losses=int(data.get("consecutive_losses", 0)),
        current_stake=float(data.get("current_stake", 0.0)),
        session_profit=float(data.get("session_profit", 0.0)),
        session_loss_total=float(data.get("session_loss_total", 0.0)),
        trades_executed=int(data.get("trades_executed", 0)),
        wins=int(data.get("wins", 0)),
        losses=int(data.get("losses", 0)),
        failed_requests=int(data.get("failed_requests", 0)),
        stop_reason=str(data.get("stop_reason", "")),
        analysis_started_at=data.get("analysis_started_at"),
        last_trade_at=data.get("last_trade_at"),
    )


# --------------------------- Transition ---------------------------


def _stop(st: SessionState, reason: str) -> tuple[SessionState, list[Action]]:
    return replace(st, phase="STOPPED", stop_reason=reason), [StopAction(reason)]


def transition(state: SessionState, event: Event, cfg: SessionConfig) -> tuple[SessionState, list[Action]]:
    """
    Pure reducer for one event.
    """
    st = state

    if isinstance(event, Start):
        if st.phase in ("ANALYZING", "TRADING"):
            return st, []
        st = SessionState(
            phase="ANALYZING",
            current_stake=stake_for(0, cfg),
            analysis_started_at=event.timestamp,
        )
        if cfg.analysis_sec <= 0:
            st = replace(st, phase="TRADING")
            return st, [RequestTradeAction(st.current_stake, 0.0)]
        return st, [ScheduleAnalysisAction(cfg.analysis_sec)]

    if isinstance(event, AnalysisElapsed):
        if st.phase != "ANALYZING":
            return st, []
        st = replace(st, phase="TRADING")
        return st, [RequestTradeAction(st.current_stake, 0.0)]

    if isinstance(event, Settlement):
        # A contract bought before a manual stop still settles and is booked.
        if st.phase not in ("TRADING", "STOPPED"):
            return st, []
        profit = float(event.profit)
        if event.won:
            losses_in_row = 0
            st = replace(st, wins=st.wins + 1)
        else:
            losses_in_row = st.consecutive_losses + 1
            st = replace(
                st,
                losses=st.losses + 1,
                session_loss_total=st.session_loss_total + abs(profit),
            )
        st = replace(
            st,
            consecutive_losses=losses_in_row,
            current_stake=stake_for(losses_in_row, cfg),
            session_profit=st.session_profit + profit,
            trades_executed=st.trades_executed + 1,
            failed_requests=0,
            last_trade_at=event.timestamp,
        )
        if st.phase == "STOPPED":
            return st, []
        reason = stop_reason_after_settlement(st, cfg)
        if reason:
            return _stop(st, reason)
        return st, [RequestTradeAction(st.current_stake, cfg.trade_interval_sec)]

    if isinstance(event, TradeFailed):
        if st.phase != "TRADING":
            return st, []
        st = replace(st, failed_requests=st.failed_requests + 1)
        if cfg.failure_policy == "halt" or st.failed_requests >= cfg.max_failed_requests:
            return _stop(st, STOP_FAILURES)
        return st, [RequestTradeAction(st.current_stake, cfg.trade_interval_sec)]

    if isinstance(event, Stop):
        if st.phase == "STOPPED":
            return st, []
        if st.phase == "IDLE":
            st = replace(st, current_stake=stake_for(st.consecutive_losses, cfg))
        return _stop(st, event.reason or STOP_MANUAL)

    return st, []


# --------------------------- Runtime wrapper ---------------------------


class StakeController:
    """
    Owns one SessionState per (strategy, market) and persists each one
    through the local store after every transition.
    """

    def __init__(self, store: LocalStore | None = None, *, clock=time.time) -> None:
        self.store = store
        self._clock = clock
        self._configs: dict[tuple[str, str], SessionConfig] = {}
        self._states: dict[tuple[str, str], SessionState] = {}

    def configure(self, strategy: str, market: str, cfg: SessionConfig | None = None) -> SessionConfig:
        cfg = cfg or SessionConfig.from_config(strategy)
        self._configs[(strategy, market)] = cfg
        return cfg

    def config_for(self, strategy: str, market: str) -> SessionConfig:
        key = (strategy, market)
        if key not in self._configs:
            return self.configure(strategy, market)
        return self._configs[key]

    def state(self, strategy: str, market: str) -> SessionState:
        key = (strategy, market)
        if key not in self._states:
            self._states[key] = self._load(strategy, market)
        return self._states[key]

    def apply(self, strategy: str, market: str, event: Event) -> list[Action]:
        cfg = self.config_for(strategy, market)
        before = self.state(strategy, market)
        after, actions = transition(before, event, cfg)
        self._states[(strategy, market)] = after
        if after.phase != before.phase:
            logger.info("%s/%s: %s -> %s%s", strategy, market, before.phase, after.phase,
                        f" ({after.stop_reason})" if after.phase == "STOPPED" else "")
        for violation in check_invariants(after, cfg):
            logger.error("%s/%s invariant violated: %s", strategy, market, violation)
        self._save(strategy, market, after)
        return actions

    def next_stake(self, strategy: str, market: str) -> float:
        return self.state(strategy, market).current_stake

    def reset(self, strategy: str, market: str) -> None:
        self._states[(strategy, market)] = SessionState()
        if self.store is not None:
            self.store.delete(session_key(strategy, market))

    def _save(self, strategy: str, market: str, state: SessionState) -> None:
        if self.store is None:
            return
        payload = to_dict(state)
        payload.update({"strategy": strategy, "market": market, "timestamp": self._clock()})
        self.store.save(session_key(strategy, market), payload)

    def _load(self, strategy: str, market: str) -> SessionState:
        if self.store is None:
            return SessionState()
        payload = self.store.load(session_key(strategy, market))
        if not payload:
            return SessionState()
        try:
            state = from_dict(payload)
        except (TypeError, ValueError) as e:
            logger.warning("Ignoring corrupt session %s/%s: %s", strategy, market, e)
            return SessionState()
        # A restored session always needs a fresh Start.
        if state.phase in ("ANALYZING", "TRADING"):
            state = replace(state, phase="STOPPED", stop_reason=state.stop_reason or "restart")
        return state
