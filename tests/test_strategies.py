import unittest
from unittest import mock

import config
from strategies import (
    NEUTRAL,
    TRADE_NOW,
    WAIT,
    DiffersStrategy,
    MatchesStrategy,
    SignalPolicy,
    analyze,
    analyze_all,
    build_registry,
    entry_confirmed,
    get_strategy,
)


POLICY = SignalPolicy(min_gap_pct=15.0, min_power_pct=55.0, confirm_run=2, min_samples=25)
OTHERS = [0, 1, 2, 3, 4, 5, 6, 8, 9]


class EntryConfirmationTests(unittest.TestCase):
    def test_needs_run_of_opposites_then_favoured(self):
        is_even = lambda d: d % 2 == 0
        self.assertTrue(entry_confirmed([2, 1, 3, 4], is_even, 2))
        self.assertFalse(entry_confirmed([2, 4, 3, 4], is_even, 2))
        self.assertFalse(entry_confirmed([1, 3, 5], is_even, 2))
        self.assertFalse(entry_confirmed([3, 4], is_even, 2))


class EvenOddTests(unittest.TestCase):
    def setUp(self):
        self.registry = build_registry(POLICY)

    def test_confirmed_bias_trades_now(self):
        sig = analyze("EVEN_ODD", [2] * 22 + [1, 1, 1] + [4], self.registry)
        self.assertEqual(sig.status, TRADE_NOW)
        self.assertEqual(sig.recommended_side, "DIGITEVEN")
        self.assertIsNone(sig.barrier)
        self.assertGreater(sig.probability, 85.0)
        self.assertTrue(sig.actionable)

    def test_bias_without_confirmation_waits(self):
        sig = analyze("EVEN_ODD", [2] * 22 + [1, 1, 1], self.registry)
        self.assertEqual(sig.status, WAIT)
        self.assertEqual(sig.recommended_side, "DIGITEVEN")
        self.assertFalse(sig.actionable)

    def test_balanced_window_is_neutral(self):
        sig = analyze("EVEN_ODD", [1, 2] * 15, self.registry)
        self.assertEqual(sig.status, NEUTRAL)
        self.assertIsNone(sig.recommended_side)

    def test_short_window_is_neutral(self):
        sig = analyze("EVEN_ODD", [2] * 10, self.registry)
        self.assertEqual(sig.status, NEUTRAL)
        self.assertIn("Collecting", sig.reason)

    def test_power_without_gap_is_neutral(self):
        policy = SignalPolicy(min_gap_pct=15.0, min_power_pct=55.0, confirm_run=2, min_samples=20)
        sig = analyze("EVEN_ODD", [2] * 11 + [1] * 9, build_registry(policy))
        self.assertEqual(sig.status, NEUTRAL)
        self.assertAlmostEqual(sig.probability, 55.0)

    def test_odd_side(self):
        sig = analyze("EVEN_ODD", [3] * 22 + [2, 2] + [5], self.registry)
        self.assertEqual(sig.status, TRADE_NOW)
        self.assertEqual(sig.recommended_side, "DIGITODD")


class OverUnderTests(unittest.TestCase):
    def setUp(self):
        self.registry = build_registry(POLICY)

    def test_over3_under6_over_side(self):
        sig = analyze("OVER3_UNDER6", [8] * 22 + [0, 0, 0] + [9], self.registry)
        self.assertEqual(sig.status, TRADE_NOW)
        self.assertEqual(sig.recommended_side, "DIGITOVER")
        self.assertEqual(sig.barrier, 3)

    def test_over1_under8_under_side(self):
        sig = analyze("OVER1_UNDER8", [0] * 22 + [9, 9, 9] + [1], self.registry)
        self.assertEqual(sig.status, TRADE_NOW)
        self.assertEqual(sig.recommended_side, "DIGITUNDER")
        self.assertEqual(sig.barrier, 8)

    def test_over2_under7_barriers(self):
        over = analyze("OVER2_UNDER7", [9] * 22 + [0, 0] + [8], self.registry)
        self.assertEqual((over.recommended_side, over.barrier), ("DIGITOVER", 2))
        under = analyze("OVER2_UNDER7", [0] * 22 + [9, 9] + [1], self.registry)
        self.assertEqual((under.recommended_side, under.barrier), ("DIGITUNDER", 7))

    def test_default_split_uses_threshold(self):
        over = analyze("OVER_UNDER", [7] * 22 + [1, 2] + [6], self.registry)
        self.assertEqual((over.status, over.recommended_side, over.barrier), (TRADE_NOW, "DIGITOVER", 4))
        under = analyze("OVER_UNDER", [1] * 22 + [7, 8] + [0], self.registry)
        self.assertEqual((under.recommended_side, under.barrier), ("DIGITUNDER", 5))


class DiffersTests(unittest.TestCase):
    def test_quiet_rare_digit_trades_now(self):
        digits = [7] + OTHERS * 3
        sig = DiffersStrategy(POLICY, max_pct=10.0, quiet_ticks=3).analyze(digits)
        self.assertEqual(sig.status, TRADE_NOW)
        self.assertEqual(sig.recommended_side, "DIGITDIFF")
        self.assertEqual(sig.barrier, 7)
        self.assertAlmostEqual(sig.probability, 100.0 - 100.0 / 28)

    def test_recent_rare_digit_waits(self):
        digits = OTHERS * 3 + [7]
        sig = DiffersStrategy(POLICY, max_pct=10.0, quiet_ticks=3).analyze(digits)
        self.assertEqual(sig.status, WAIT)
        self.assertEqual(sig.barrier, 7)

    def test_no_rare_digit_is_neutral(self):
        sig = DiffersStrategy(POLICY, max_pct=10.0, quiet_ticks=3).analyze(list(range(10)) * 3)
        self.assertEqual(sig.status, NEUTRAL)
        self.assertIsNone(sig.recommended_side)

    def test_prefers_quiet_digit_among_tied_rarest(self):
        digits = OTHERS * 3 + [7]
        digits = [d for d in digits if d != 0] + [0]
        # 0 and 7 both appear once; 0 is the very last tick
        sig = DiffersStrategy(POLICY, max_pct=10.0, quiet_ticks=1).analyze(digits)
        self.assertEqual(sig.status, TRADE_NOW)
        self.assertEqual(sig.barrier, 7)


class MatchesTests(unittest.TestCase):
    def test_dominant_digit_trades_now(self):
        sig = MatchesStrategy(POLICY).analyze([3] * 5 + [0, 1, 2, 4, 5, 6, 7, 8, 9] * 3)
        self.assertEqual(sig.status, TRADE_NOW)
        self.assertEqual((sig.recommended_side, sig.barrier), ("DIGITMATCH", 3))

    def test_moderate_digit_waits(self):
        sig = MatchesStrategy(POLICY).analyze([3] * 4 + [0, 1, 2, 4, 5, 6, 7, 8, 9] * 3)
        self.assertEqual(sig.status, WAIT)

    def test_flat_window_is_neutral(self):
        sig = MatchesStrategy(POLICY).analyze(list(range(10)) * 3)
        self.assertEqual(sig.status, NEUTRAL)


class RegistryTests(unittest.TestCase):
    def test_analyze_all_covers_every_strategy(self):
        signals = analyze_all(list(range(10)) * 3, build_registry(POLICY))
        self.assertEqual(
            set(signals),
            {"EVEN_ODD", "OVER_UNDER", "OVER1_UNDER8", "OVER2_UNDER7", "OVER3_UNDER6", "DIFFERS", "MATCHES"},
        )
        for name, sig in signals.items():
            self.assertEqual(sig.strategy_type, name)

    def test_unknown_strategy(self):
        with self.assertRaises(ValueError):
            get_strategy("RISE_FALL", build_registry(POLICY))

    def test_lookup_is_case_insensitive(self):
        self.assertEqual(get_strategy("even_odd", build_registry(POLICY)).name, "EVEN_ODD")

    def test_multiplier_comes_from_config(self):
        registry = build_registry(POLICY)
        with mock.patch.dict(config.STRATEGY_MULTIPLIERS, {"DIFFERS": 12.0, "OVER2_UNDER7": 3.5}):
            self.assertEqual(registry["DIFFERS"].multiplier, 12.0)
            self.assertEqual(registry["OVER2_UNDER7"].multiplier, 3.5)

    def test_policy_from_config(self):
        with mock.patch.object(config, "SIGNAL_MIN_GAP_PCT", 20.0):
            self.assertEqual(SignalPolicy.from_config().min_gap_pct, 20.0)


if __name__ == "__main__":
    unittest.main()
