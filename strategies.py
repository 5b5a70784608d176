"""
strategies.py -- Stateless signal strategies over a window of last digits.

Every strategy maps a list of digits (oldest first) to a Signal with status
TRADE_NOW, WAIT or NEUTRAL.

One decision policy (SignalPolicy) governs every two-outcome family
(even/odd and all over/under cut points):

  - favoured side = the outcome with the higher share of the window
  - directional only when the gap between the two shares is at least
    min_gap_pct points AND the favoured share is at least min_power_pct
  - TRADE_NOW only when the tail of the window confirms an entry: at least
    confirm_run consecutive non-favoured digits followed by one favoured
    digit; a directional window without that tail is WAIT
  - anything weaker (or a window shorter than min_samples) is NEUTRAL

Differs and Matches have their own single-digit rules (see below).
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from functools import partial
from typing import Callable

import config
from digit_stats import digit_counts, percentages, share_pct

TRADE_NOW = "TRADE_NOW"
WAIT = "WAIT"
NEUTRAL = "NEUTRAL"


@dataclass(frozen=True)
class Signal:
    strategy_type: str
    status: str
    recommended_side: str | None = None
    barrier: int | None = None
    probability: float = 0.0
    entry_condition: str = ""
    reason: str = ""

    @property
    def actionable(self) -> bool:
        return self.status == TRADE_NOW and self.recommended_side is not None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class SignalPolicy:
    min_gap_pct: float = 15.0
    min_power_pct: float = 55.0
    confirm_run: int = 2
    min_samples: int = 25

    @classmethod
    def from_config(cls) -> "SignalPolicy":
        return cls(
            min_gap_pct=config.SIGNAL_MIN_GAP_PCT,
            min_power_pct=config.SIGNAL_MIN_POWER_PCT,
            confirm_run=config.SIGNAL_CONFIRM_RUN,
            min_samples=config.SIGNAL_MIN_SAMPLES,
        )


def entry_confirmed(digits: list[int], favoured: Callable[[int], bool], run: int) -> bool:
    """Last digit favoured, preceded by at least *run* non-favoured digits."""
    if len(digits) < run + 1 or not favoured(digits[-1]):
        return False
    tail = digits[-(run + 1):-1]
    return all(not favoured(d) for d in tail)


# ---------------------------------------------------------------------------
# Digit predicates
# ---------------------------------------------------------------------------

def _is_even(d: int) -> bool:
    return d % 2 == 0


def _is_odd(d: int) -> bool:
    return d % 2 == 1


def _at_least(threshold: int, d: int) -> bool:
    return d >= threshold


def _at_most(threshold: int, d: int) -> bool:
    return d <= threshold


@dataclass(frozen=True)
class Outcome:
    label: str
    predicate: Callable[[int], bool]
    contract_type: str
    barrier: int | None = None


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

class Strategy:
    name = ""

    def analyze(self, digits: list[int]) -> Signal:
        raise NotImplementedError

    @property
    def multiplier(self) -> float:
        return float(config.STRATEGY_MULTIPLIERS.get(self.name, 2.0))

    def _neutral(self, reason: str, probability: float = 0.0, entry: str = "") -> Signal:
        return Signal(self.name, NEUTRAL, probability=probability, entry_condition=entry, reason=reason)


class TwoOutcomeStrategy(Strategy):
    """Even/odd and over/under families under the shared SignalPolicy."""

    def __init__(self, name: str, first: Outcome, second: Outcome, policy: SignalPolicy | None = None):
        self.name = name
        self.first = first
        self.second = second
        self.policy = policy or SignalPolicy.from_config()

    def analyze(self, digits: list[int]) -> Signal:
        digits = list(digits)
        p = self.policy
        if len(digits) < p.min_samples:
            return self._neutral(
                f"Collecting data ({len(digits)}/{p.min_samples} ticks)",
                entry=f"Wait for {p.min_samples} ticks",
            )

        pct_a = share_pct(digits, self.first.predicate)
        pct_b = share_pct(digits, self.second.predicate)
        if pct_a >= pct_b:
            fav, other, power, weaker = self.first, self.second, pct_a, pct_b
        else:
            fav, other, power, weaker = self.second, self.first, pct_b, pct_a
        gap = power - weaker

        if gap < p.min_gap_pct or power < p.min_power_pct:
            return self._neutral(
                f"No clear bias: {fav.label} {power:.1f}% vs {other.label} {weaker:.1f}% "
                f"(gap {gap:.1f}pt)",
                probability=power,
                entry=f"Wait for a {p.min_gap_pct:.0f}pt gap and {p.min_power_pct:.0f}%+ power",
            )

        entry = (
            f"After {p.confirm_run}+ consecutive non-{fav.label} digits, "
            f"enter {fav.contract_type} on the next {fav.label} digit"
        )
        if entry_confirmed(digits, fav.predicate, p.confirm_run):
            status = TRADE_NOW
            reason = f"{fav.label} at {power:.1f}% (gap {gap:.1f}pt), entry confirmed"
        else:
            status = WAIT
            reason = f"{fav.label} at {power:.1f}% (gap {gap:.1f}pt), waiting for entry"
        return Signal(
            strategy_type=self.name,
            status=status,
            recommended_side=fav.contract_type,
            barrier=fav.barrier,
            probability=power,
            entry_condition=entry,
            reason=reason,
        )


class DiffersStrategy(Strategy):
    """
    Bet that the next digit differs from the rarest digit in the window.

    TRADE_NOW when the rarest digit is under max_pct and absent from the
    last quiet_ticks digits; WAIT when it showed up in them; NEUTRAL when
    no digit is rare enough.
    """

    name = "DIFFERS"

    def __init__(self, policy: SignalPolicy | None = None, max_pct: float | None = None,
                 quiet_ticks: int | None = None):
        self.policy = policy or SignalPolicy.from_config()
        self.max_pct = config.DIFFERS_MAX_PCT if max_pct is None else float(max_pct)
        self.quiet_ticks = config.DIFFERS_QUIET_TICKS if quiet_ticks is None else int(quiet_ticks)

    def analyze(self, digits: list[int]) -> Signal:
        digits = list(digits)
        if len(digits) < self.policy.min_samples:
            return self._neutral(
                f"Collecting data ({len(digits)}/{self.policy.min_samples} ticks)",
                probability=50.0,
            )
        pcts = percentages(digit_counts(digits))
        low = float(pcts.min())
        rarest = [d for d in range(10) if pcts[d] == low]
        recent = digits[-self.quiet_ticks:] if self.quiet_ticks > 0 else []
        # Prefer a rarest digit that has stayed quiet
        quiet = [d for d in rarest if d not in recent]
        target = quiet[0] if quiet else rarest[0]

        if low >= self.max_pct:
            return self._neutral(
                f"No digit under {self.max_pct:.0f}% (rarest {target} at {low:.1f}%)",
                probability=50.0,
                entry=f"Wait for a digit to drop below {self.max_pct:.0f}%",
            )

        probability = 100.0 - low
        if target in recent:
            return Signal(
                self.name, WAIT, "DIGITDIFF", target, probability,
                entry_condition=f"Enter DIFFERS {target} once it misses {self.quiet_ticks} ticks",
                reason=f"Digit {target} at {low:.1f}% appeared in the last {self.quiet_ticks} ticks",
            )
        return Signal(
            self.name, TRADE_NOW, "DIGITDIFF", target, probability,
            entry_condition=f"Digit {target} absent for {self.quiet_ticks}+ ticks",
            reason=f"Rarest digit {target} at {low:.1f}%",
        )


class MatchesStrategy(Strategy):
    """Bet that the next digit matches the dominant digit of the window."""

    name = "MATCHES"

    def __init__(self, policy: SignalPolicy | None = None, trade_pct: float = 15.0, wait_pct: float = 12.0):
        self.policy = policy or SignalPolicy.from_config()
        self.trade_pct = float(trade_pct)
        self.wait_pct = float(wait_pct)

    def analyze(self, digits: list[int]) -> Signal:
        digits = list(digits)
        if len(digits) < self.policy.min_samples:
            return self._neutral(f"Collecting data ({len(digits)}/{self.policy.min_samples} ticks)")
        pcts = percentages(digit_counts(digits))
        top = int(pcts.argmax())
        pct = float(pcts[top])
        if pct >= self.trade_pct:
            return Signal(
                self.name, TRADE_NOW, "DIGITMATCH", top, pct,
                entry_condition=f"Trade MATCHES {top} now",
                reason=f"Digit {top} dominant at {pct:.1f}%",
            )
        if pct >= self.wait_pct:
            return Signal(
                self.name, WAIT, "DIGITMATCH", top, pct,
                entry_condition=f"Wait for digit {top} to reach {self.trade_pct:.0f}%",
                reason=f"Digit {top} at {pct:.1f}%",
            )
        return self._neutral("No dominant digit", probability=pct)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

# name -> (over side digits >= n, under side digits <= m)
OVER_UNDER_PAIRS = {
    "OVER1_UNDER8": (2, 7),
    "OVER2_UNDER7": (3, 6),
    "OVER3_UNDER6": (4, 5),
}


def over_under(name: str, over_from: int, under_to: int, policy: SignalPolicy | None = None) -> TwoOutcomeStrategy:
    """
    Over side = digits >= over_from (DIGITOVER barrier over_from - 1),
    under side = digits <= under_to (DIGITUNDER barrier under_to + 1).
    """
    return TwoOutcomeStrategy(
        name,
        Outcome("OVER", partial(_at_least, over_from), "DIGITOVER", over_from - 1),
        Outcome("UNDER", partial(_at_most, under_to), "DIGITUNDER", under_to + 1),
        policy,
    )


def build_registry(policy: SignalPolicy | None = None, over_threshold: int | None = None) -> dict[str, Strategy]:
    policy = policy or SignalPolicy.from_config()
    split = config.OVER_UNDER_THRESHOLD if over_threshold is None else int(over_threshold)
    registry: dict[str, Strategy] = {
        "EVEN_ODD": TwoOutcomeStrategy(
            "EVEN_ODD",
            Outcome("EVEN", _is_even, "DIGITEVEN"),
            Outcome("ODD", _is_odd, "DIGITODD"),
            policy,
        ),
        "OVER_UNDER": over_under("OVER_UNDER", split, split - 1, policy),
    }
    for name, (over_from, under_to) in OVER_UNDER_PAIRS.items():
        registry[name] = over_under(name, over_from, under_to, policy)
    registry["DIFFERS"] = DiffersStrategy(policy)
    registry["MATCHES"] = MatchesStrategy(policy)
    return registry


def get_strategy(name: str, registry: dict[str, Strategy] | None = None) -> Strategy:
    registry = registry if registry is not None else build_registry()
    key = str(name or "").strip().upper()
    if key not in registry:
        raise ValueError(f"unknown strategy {name!r} (known: {', '.join(registry)})")
    return registry[key]


def analyze(name: str, digits: list[int], registry: dict[str, Strategy] | None = None) -> Signal:
    return get_strategy(name, registry).analyze(digits)


def analyze_all(digits: list[int], registry: dict[str, Strategy] | None = None) -> dict[str, Signal]:
    registry = registry if registry is not None else build_registry()
    return {name: strat.analyze(digits) for name, strat in registry.items()}
