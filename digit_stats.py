"""
digit_stats.py -- Last-digit statistics over a rolling tick window.

compute_snapshot() turns a buffer of last digits into one immutable
AnalysisSnapshot:

  1. Digit frequency distribution (count + percentage per digit 0-9)
  2. Even/odd and over/under split at a configurable threshold
  3. Middle band (digits 3-6), display only
  4. Shannon entropy and the derived randomness level
  5. Power index (strongest/weakest digit), missing digits, streaks
  6. Bias direction and strength

The bias is a majority heuristic: it reports which side of a two-way split
has been more frequent in the window.  It is NOT a statistical estimator
and carries no guarantee of predictive power on a random process.

An empty window yields all zeros (never NaN).
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable

import numpy as np

import config

MAX_ENTROPY = math.log2(10)
MIDDLE_BAND = (3, 6)


@dataclass(frozen=True)
class DigitFrequency:
    digit: int
    count: int
    percentage: float


@dataclass(frozen=True)
class Streak:
    digit: int
    length: int


@dataclass(frozen=True)
class PowerIndex:
    strongest: int
    weakest: int
    gap: float


@dataclass(frozen=True)
class AnalysisSnapshot:
    digit_frequencies: tuple[DigitFrequency, ...]
    total_ticks: int
    even_count: int = 0
    odd_count: int = 0
    even_pct: float = 0.0
    odd_pct: float = 0.0
    over_threshold: int = 5
    over_count: int = 0
    under_count: int = 0
    over_pct: float = 0.0
    under_pct: float = 0.0
    middle_count: int = 0
    middle_pct: float = 0.0
    bias_direction: str = "NEUTRAL"
    bias_strength: float = 0.0
    entropy: float = 0.0
    randomness_pct: float = 0.0
    power_index: PowerIndex = PowerIndex(0, 0, 0.0)
    missing_digits: tuple[int, ...] = ()
    streaks: tuple[Streak, ...] = ()
    current_streak: Streak | None = None
    current_price: Decimal | None = None
    last_digits: tuple[int, ...] = field(default_factory=tuple)

    def frequency(self, digit: int) -> DigitFrequency:
        return self.digit_frequencies[int(digit)]

    def to_dict(self) -> dict:
        return {
            "total_ticks": self.total_ticks,
            "digit_frequencies": [
                {"digit": f.digit, "count": f.count, "percentage": round(f.percentage, 2)}
                for f in self.digit_frequencies
            ],
            "even_pct": round(self.even_pct, 2),
            "odd_pct": round(self.odd_pct, 2),
            "over_threshold": self.over_threshold,
            "over_pct": round(self.over_pct, 2),
            "under_pct": round(self.under_pct, 2),
            "middle_pct": round(self.middle_pct, 2),
            "bias_direction": self.bias_direction,
            "bias_strength": round(self.bias_strength, 2),
            "entropy": round(self.entropy, 4),
            "randomness_pct": round(self.randomness_pct, 2),
            "power_index": {
                "strongest": self.power_index.strongest,
                "weakest": self.power_index.weakest,
                "gap": round(self.power_index.gap, 2),
            },
            "missing_digits": list(self.missing_digits),
            "streaks": [{"digit": s.digit, "length": s.length} for s in self.streaks],
            "current_price": str(self.current_price) if self.current_price is not None else None,
            "last_digits": list(self.last_digits),
        }


# ============================================================================
# Building blocks (shared with strategies.py)
# ============================================================================

def digit_counts(digits: Iterable[int]) -> np.ndarray:
    """Count of each digit 0-9 as an int array of length 10."""
    arr = np.asarray(list(digits), dtype=np.int64)
    if arr.size == 0:
        return np.zeros(10, dtype=np.int64)
    if arr.min() < 0 or arr.max() > 9:
        raise ValueError("digits must be in 0..9")
    return np.bincount(arr, minlength=10)


def percentages(counts: np.ndarray) -> np.ndarray:
    total = int(counts.sum())
    if total == 0:
        return np.zeros(len(counts), dtype=float)
    return counts.astype(float) / total * 100.0


def share_pct(digits: list[int], predicate) -> float:
    """Percentage of *digits* satisfying *predicate* (0 for an empty list)."""
    if not digits:
        return 0.0
    return sum(1 for d in digits if predicate(d)) / len(digits) * 100.0


def shannon_entropy(counts: np.ndarray) -> float:
    """Entropy in bits; 0 for an empty or single-valued window, log2(10) when uniform."""
    total = counts.sum()
    if total == 0:
        return 0.0
    p = counts[counts > 0].astype(float) / total
    return float(-(p * np.log2(p)).sum()) + 0.0


def detect_streaks(digits: list[int]) -> tuple[Streak, ...]:
    """
    Runs of one repeated digit with length >= 2, longest per digit.

    Scanned from the most recent tick backwards, so among equal lengths
    the more recent run is listed first.
    """
    best: dict[int, int] = {}
    order: list[int] = []
    i = len(digits) - 1
    while i >= 0:
        d = digits[i]
        j = i
        while j > 0 and digits[j - 1] == d:
            j -= 1
        length = i - j + 1
        if length >= 2:
            if d not in best:
                order.append(d)
            best[d] = max(best.get(d, 0), length)
        i = j - 1
    ranked = sorted(order, key=lambda d: -best[d])
    return tuple(Streak(d, best[d]) for d in ranked)


def trailing_run(digits: list[int]) -> Streak | None:
    if not digits:
        return None
    last = digits[-1]
    n = 0
    for d in reversed(digits):
        if d != last:
            break
        n += 1
    return Streak(last, n)


# ============================================================================
# Snapshot
# ============================================================================

def compute_snapshot(
    digits: list[int],
    *,
    over_threshold: int | None = None,
    current_price: Decimal | None = None,
) -> AnalysisSnapshot:
    """Full recomputation over *digits* (oldest first).  Pure."""
    threshold = config.OVER_UNDER_THRESHOLD if over_threshold is None else int(over_threshold)
    digits = [int(d) for d in digits]
    counts = digit_counts(digits)
    pcts = percentages(counts)
    total = len(digits)

    freqs = tuple(
        DigitFrequency(digit=d, count=int(counts[d]), percentage=float(pcts[d]))
        for d in range(10)
    )
    if total == 0:
        return AnalysisSnapshot(
            digit_frequencies=freqs,
            total_ticks=0,
            over_threshold=threshold,
            current_price=current_price,
        )

    even = int(counts[0::2].sum())
    odd = total - even
    over = int(counts[threshold:].sum())
    under = total - over
    lo, hi = MIDDLE_BAND
    middle = int(counts[lo:hi + 1].sum())

    even_pct = even / total * 100.0
    odd_pct = odd / total * 100.0
    over_pct = over / total * 100.0
    under_pct = under / total * 100.0

    sides = [("EVEN", even_pct), ("ODD", odd_pct), ("OVER", over_pct), ("UNDER", under_pct)]
    bias_direction, bias_strength = max(sides, key=lambda s: s[1])

    entropy = shannon_entropy(counts)

    # argmax/argmin return the lowest digit on ties
    strongest = int(np.argmax(counts))
    weakest = int(np.argmin(counts))

    return AnalysisSnapshot(
        digit_frequencies=freqs,
        total_ticks=total,
        even_count=even,
        odd_count=odd,
        even_pct=even_pct,
        odd_pct=odd_pct,
        over_threshold=threshold,
        over_count=over,
        under_count=under,
        over_pct=over_pct,
        under_pct=under_pct,
        middle_count=middle,
        middle_pct=middle / total * 100.0,
        bias_direction=bias_direction,
        bias_strength=bias_strength,
        entropy=entropy,
        randomness_pct=entropy / MAX_ENTROPY * 100.0,
        power_index=PowerIndex(strongest, weakest, float(pcts[strongest] - pcts[weakest])),
        missing_digits=tuple(int(d) for d in np.flatnonzero(counts == 0)),
        streaks=detect_streaks(digits),
        current_streak=trailing_run(digits),
        current_price=current_price,
        last_digits=tuple(digits),
    )


def snapshot_from_ticks(ticks, *, over_threshold: int | None = None) -> AnalysisSnapshot:
    """compute_snapshot over a list of tick_feed.Tick."""
    ticks = list(ticks)
    price = ticks[-1].price if ticks else None
    return compute_snapshot(
        [t.last_digit for t in ticks], over_threshold=over_threshold, current_price=price
    )
