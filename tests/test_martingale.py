import tempfile
import unittest

import martingale as mg
from local_store import LocalStore


CFG = mg.SessionConfig(
    base_stake=1.0,
    multiplier=2.0,
    cap_level=5,
    target_profit=10.0,
    max_loss=50.0,
    analysis_sec=300.0,
    trade_interval_sec=3.0,
)


def _trading(cfg=CFG, **overrides):
    st = mg.SessionState(phase="TRADING", current_stake=mg.stake_for(0, cfg))
    return mg.SessionState(**{**st.__dict__, **overrides})


def _settle(state, won, profit, cfg=CFG, ts=1.0):
    return mg.transition(state, mg.Settlement(won=won, profit=profit, timestamp=ts), cfg)


class StakeTests(unittest.TestCase):
    def test_stake_after_three_losses(self):
        self.assertEqual(mg.stake_for(3, CFG), 8.0)

    def test_stake_capped_at_level_five(self):
        self.assertEqual(mg.stake_for(5, CFG), 32.0)
        self.assertEqual(mg.stake_for(6, CFG), 32.0)
        self.assertEqual(mg.stake_for(40, CFG), 32.0)

    def test_max_stake_clamp(self):
        cfg = mg.SessionConfig(base_stake=1.0, multiplier=2.0, max_stake=5.0)
        self.assertEqual(mg.stake_for(4, cfg), 5.0)

    def test_per_strategy_multiplier(self):
        cfg = mg.SessionConfig(base_stake=0.35, multiplier=2.1)
        self.assertEqual(mg.stake_for(2, cfg), round(0.35 * 2.1 ** 2, 2))


class TransitionTests(unittest.TestCase):
    def test_start_then_analysis_then_trading(self):
        st, actions = mg.transition(mg.SessionState(), mg.Start(100.0), CFG)
        self.assertEqual(st.phase, "ANALYZING")
        self.assertEqual(st.analysis_started_at, 100.0)
        self.assertEqual(actions, [mg.ScheduleAnalysisAction(300.0)])

        st, actions = mg.transition(st, mg.AnalysisElapsed(400.0), CFG)
        self.assertEqual(st.phase, "TRADING")
        self.assertEqual(actions, [mg.RequestTradeAction(1.0, 0.0)])

    def test_start_without_analysis_window_trades_immediately(self):
        cfg = mg.SessionConfig(analysis_sec=0)
        st, actions = mg.transition(mg.SessionState(), mg.Start(0.0), cfg)
        self.assertEqual(st.phase, "TRADING")
        self.assertIsInstance(actions[0], mg.RequestTradeAction)

    def test_losses_double_stake_and_win_resets(self):
        st = _trading()
        for _ in range(3):
            st, actions = _settle(st, False, -st.current_stake)
        self.assertEqual(st.consecutive_losses, 3)
        self.assertEqual(st.current_stake, 8.0)
        self.assertEqual(st.session_loss_total, 7.0)
        self.assertEqual(actions, [mg.RequestTradeAction(8.0, 3.0)])

        st, actions = _settle(st, True, 7.6)
        self.assertEqual(st.consecutive_losses, 0)
        self.assertEqual(st.current_stake, 1.0)
        self.assertEqual((st.wins, st.losses, st.trades_executed), (1, 3, 4))
        self.assertAlmostEqual(st.session_profit, 0.6)
        self.assertEqual(mg.check_invariants(st, CFG), [])

    def test_target_profit_checked_before_max_loss(self):
        cfg = mg.SessionConfig(target_profit=5.0, max_loss=5.0)
        st = _trading(cfg, session_profit=4.0, session_loss_total=5.0)
        st, actions = _settle(st, True, 1.5, cfg)
        self.assertEqual(st.phase, "STOPPED")
        self.assertEqual(st.stop_reason, mg.STOP_TARGET_PROFIT)
        self.assertEqual(actions, [mg.StopAction(mg.STOP_TARGET_PROFIT)])

    def test_max_loss_stops_session(self):
        cfg = mg.SessionConfig(target_profit=100.0, max_loss=3.0)
        st = _trading(cfg)
        st, _ = _settle(st, False, -1.0, cfg)
        self.assertEqual(st.phase, "TRADING")
        st, actions = _settle(st, False, -2.0, cfg)
        self.assertEqual(st.stop_reason, mg.STOP_MAX_LOSS)
        self.assertEqual(actions, [mg.StopAction(mg.STOP_MAX_LOSS)])

    def test_max_trades_checked_last(self):
        cfg = mg.SessionConfig(target_profit=100.0, max_loss=100.0, max_trades=2)
        st = _trading(cfg)
        st, _ = _settle(st, True, 0.95, cfg)
        st, actions = _settle(st, False, -1.0, cfg)
        self.assertEqual(st.stop_reason, mg.STOP_MAX_TRADES)

    def test_transport_failure_does_not_count_as_loss(self):
        cfg = mg.SessionConfig(failure_policy="retry", max_failed_requests=3)
        st = _trading(cfg, consecutive_losses=2, current_stake=mg.stake_for(2, cfg))
        st, actions = mg.transition(st, mg.TradeFailed("timeout", 1.0), cfg)
        self.assertEqual(st.phase, "TRADING")
        self.assertEqual(st.consecutive_losses, 2)
        self.assertEqual(st.failed_requests, 1)
        self.assertEqual(actions, [mg.RequestTradeAction(4.0, cfg.trade_interval_sec)])

        st, _ = mg.transition(st, mg.TradeFailed("timeout", 2.0), cfg)
        st, actions = mg.transition(st, mg.TradeFailed("timeout", 3.0), cfg)
        self.assertEqual(st.stop_reason, mg.STOP_FAILURES)
        self.assertEqual(st.consecutive_losses, 2)

    def test_settlement_resets_failure_counter(self):
        st = _trading(failed_requests=2)
        st, _ = _settle(st, True, 0.95)
        self.assertEqual(st.failed_requests, 0)

    def test_halt_policy_stops_on_first_failure(self):
        cfg = mg.SessionConfig(failure_policy="halt")
        st, actions = mg.transition(_trading(cfg), mg.TradeFailed("closed", 1.0), cfg)
        self.assertEqual(st.phase, "STOPPED")
        self.assertEqual(actions, [mg.StopAction(mg.STOP_FAILURES)])

    def test_manual_stop(self):
        st, actions = mg.transition(_trading(), mg.Stop(5.0), CFG)
        self.assertEqual((st.phase, st.stop_reason), ("STOPPED", mg.STOP_MANUAL))
        self.assertEqual(actions, [mg.StopAction(mg.STOP_MANUAL)])

    def test_stop_from_idle_reaches_stopped(self):
        st, actions = mg.transition(mg.SessionState(), mg.Stop(5.0, "shutdown"), CFG)
        self.assertEqual((st.phase, st.stop_reason), ("STOPPED", "shutdown"))
        self.assertEqual(actions, [mg.StopAction("shutdown")])
        self.assertEqual(mg.check_invariants(st, CFG), [])

    def test_stop_from_analyzing(self):
        st, _ = mg.transition(mg.SessionState(), mg.Start(1.0), CFG)
        st, actions = mg.transition(st, mg.Stop(2.0), CFG)
        self.assertEqual((st.phase, st.stop_reason), ("STOPPED", mg.STOP_MANUAL))
        self.assertEqual(actions, [mg.StopAction(mg.STOP_MANUAL)])

    def test_stop_when_stopped_is_ignored(self):
        st, _ = mg.transition(_trading(), mg.Stop(5.0), CFG)
        self.assertEqual(mg.transition(st, mg.Stop(6.0, "shutdown"), CFG), (st, []))

    def test_stake_rounded_to_cents(self):
        cfg = mg.SessionConfig(base_stake=1.0, multiplier=2.1)
        self.assertEqual(mg.stake_for(3, cfg), 9.26)

    def test_settlement_after_stop_is_booked_without_new_trade(self):
        st, _ = mg.transition(_trading(), mg.Stop(5.0), CFG)
        st, actions = _settle(st, False, -1.0)
        self.assertEqual(st.trades_executed, 1)
        self.assertEqual(st.phase, "STOPPED")
        self.assertEqual(actions, [])

    def test_events_out_of_phase_are_ignored(self):
        idle = mg.SessionState()
        self.assertEqual(mg.transition(idle, mg.AnalysisElapsed(1.0), CFG), (idle, []))
        self.assertEqual(_settle(idle, True, 1.0), (idle, []))
        running = _trading()
        self.assertEqual(mg.transition(running, mg.Start(1.0), CFG), (running, []))

    def test_restart_after_stop_resets_counters(self):
        st = _trading(trades_executed=3, wins=1, losses=2, session_profit=-2.0,
                      phase="STOPPED", stop_reason="manual")
        st, _ = mg.transition(st, mg.Start(9.0), CFG)
        self.assertEqual(st.trades_executed, 0)
        self.assertEqual(st.session_profit, 0.0)
        self.assertEqual(st.stop_reason, "")

    def test_dict_round_trip(self):
        st = _trading(consecutive_losses=2, current_stake=4.0, session_profit=-3.0, losses=2,
                      trades_executed=2, session_loss_total=3.0, last_trade_at=12.5)
        self.assertEqual(mg.from_dict(mg.to_dict(st)), st)


class StakeControllerTests(unittest.TestCase):
    def test_state_persists_per_strategy_and_market(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = LocalStore(tmp)
            ctl = mg.StakeController(store)
            ctl.configure("EVEN_ODD", "R_100", CFG)
            ctl.apply("EVEN_ODD", "R_100", mg.Start(1.0))
            ctl.apply("EVEN_ODD", "R_100", mg.AnalysisElapsed(2.0))
            ctl.apply("EVEN_ODD", "R_100", mg.Settlement(False, -1.0, 3.0))
            self.assertEqual(ctl.next_stake("EVEN_ODD", "R_100"), 2.0)
            self.assertEqual(ctl.state("DIFFERS", "R_100").phase, "IDLE")

            reloaded = mg.StakeController(store)
            st = reloaded.state("EVEN_ODD", "R_100")
            self.assertEqual(st.consecutive_losses, 1)
            self.assertEqual(st.current_stake, 2.0)
            self.assertEqual(st.trades_executed, 1)
            self.assertEqual(st.phase, "STOPPED")
            self.assertIn("session_EVEN_ODD_R_100", store.keys())

    def test_reset_forgets_saved_state(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = LocalStore(tmp)
            ctl = mg.StakeController(store)
            ctl.configure("DIFFERS", "R_50", CFG)
            ctl.apply("DIFFERS", "R_50", mg.Start(1.0))
            ctl.reset("DIFFERS", "R_50")
            self.assertEqual(ctl.state("DIFFERS", "R_50"), mg.SessionState())
            self.assertEqual(store.keys(), [])


if __name__ == "__main__":
    unittest.main()
