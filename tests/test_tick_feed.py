import asyncio
import tempfile
import unittest
from decimal import Decimal

from deriv_client import decode_message
from errors import DataError, RateLimitError
from local_store import LocalStore
from tick_feed import SymbolBuffer, TickFeed, extract_last_digit, make_tick, parse_tick


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeClient:
    def __init__(self, histories=None, failing=(), rate_limited=()):
        self.calls = []
        self.histories = histories or {}
        self.failing = set(failing)
        self.rate_limited = set(rate_limited)
        self.callbacks = {}

    async def connect(self):
        self.calls.append(("connect",))

    async def subscribe_ticks(self, symbol, callback):
        sub_id = f"sub-{symbol}"
        self.callbacks[sub_id] = callback
        self.calls.append(("subscribe", symbol))
        return sub_id

    async def ticks_history(self, symbol, count=100):
        self.calls.append(("history", symbol))
        if symbol in self.failing:
            raise DataError("no history")
        if symbol in self.rate_limited:
            raise RateLimitError("slow down", code="RateLimit")
        return self.histories[symbol]

    async def forget(self, sub_id):
        self.calls.append(("forget", sub_id))
        self.callbacks.pop(sub_id, None)
        return True

    async def close(self):
        self.calls.append(("close",))


def _history(*prices, pip_size=2):
    return {"prices": list(prices), "times": list(range(1, len(prices) + 1)), "pip_size": pip_size}


class LastDigitTests(unittest.TestCase):
    def test_trailing_zero_string_keeps_zero(self):
        self.assertEqual(extract_last_digit("1234.50"), 0)

    def test_float_without_pip_size(self):
        self.assertEqual(extract_last_digit(99.9), 9)

    def test_decimal_keeps_published_width(self):
        self.assertEqual(extract_last_digit(Decimal("1234.50")), 0)
        self.assertEqual(extract_last_digit(Decimal("1234.57")), 7)

    def test_short_decimal_is_padded_to_pip_size(self):
        self.assertEqual(extract_last_digit(Decimal("1234.5"), 2), 0)
        self.assertEqual(extract_last_digit(1234.5, 2), 0)
        self.assertEqual(extract_last_digit(100, 2), 0)

    def test_decoder_preserves_trailing_zero(self):
        msg = decode_message('{"tick": {"quote": 1234.50, "symbol": "R_100"}}')
        self.assertEqual(msg["tick"]["quote"], Decimal("1234.50"))
        self.assertEqual(extract_last_digit(msg["tick"]["quote"]), 0)

    def test_garbage_quote_raises_data_error(self):
        with self.assertRaises(DataError):
            extract_last_digit("abc")
        with self.assertRaises(DataError):
            parse_tick({"symbol": "R_100"})

    def test_parse_tick_builds_immutable_tick(self):
        tick = parse_tick({"symbol": "R_50", "quote": Decimal("250.1230"), "epoch": 1700000000, "pip_size": 4})
        self.assertEqual(tick.symbol, "R_50")
        self.assertEqual(tick.last_digit, 0)
        self.assertEqual(tick.server_timestamp, 1700000000)
        with self.assertRaises(AttributeError):
            tick.last_digit = 5


class SymbolBufferTests(unittest.TestCase):
    def test_fifo_eviction_at_capacity(self):
        buf = SymbolBuffer("R_100", capacity=3)
        for i, quote in enumerate(["1.01", "1.02", "1.03", "1.04", "1.05"]):
            buf.append(make_tick("R_100", quote, i))
        self.assertEqual(len(buf), 3)
        self.assertEqual(buf.digits(), [3, 4, 5])
        self.assertEqual(buf.last_tick.price, Decimal("1.05"))

    def test_rejects_zero_capacity(self):
        with self.assertRaises(ValueError):
            SymbolBuffer("R_100", capacity=0)


class TickFeedTests(unittest.IsolatedAsyncioTestCase):
    async def test_stream_ticks_reach_buffer_and_listeners(self):
        client = FakeClient()
        feed = TickFeed(client, capacity=10)
        seen = []
        feed.add_listener(seen.append)

        sub_id = await feed.connect("R_100")
        callback = client.callbacks[sub_id]
        callback({"msg_type": "tick", "tick": {"quote": Decimal("812.40"), "epoch": 1, "pip_size": 2}})
        callback({"msg_type": "tick", "tick": {"quote": Decimal("812.47"), "epoch": 2, "pip_size": 2}})
        callback({"msg_type": "tick"})

        self.assertEqual(feed.digits("R_100"), [0, 7])
        self.assertEqual([t.last_digit for t in seen], [0, 7])
        self.assertEqual(seen[0].symbol, "R_100")

    async def test_malformed_stream_tick_is_dropped(self):
        client = FakeClient()
        feed = TickFeed(client)
        sub_id = await feed.connect("R_100")
        with self.assertLogs("tick_feed", level="WARNING"):
            client.callbacks[sub_id]({"tick": {"quote": "n/a"}})
        self.assertEqual(len(feed.buffer("R_100")), 0)

    async def test_connect_is_idempotent_per_symbol(self):
        client = FakeClient()
        feed = TickFeed(client)
        first = await feed.connect("R_100")
        second = await feed.connect("R_100")
        self.assertEqual(first, second)
        self.assertEqual(client.calls.count(("subscribe", "R_100")), 1)

    async def test_history_replaces_buffer(self):
        client = FakeClient({"R_100": _history(Decimal("10.1"), Decimal("10.25"), Decimal("10.3"))})
        feed = TickFeed(client, capacity=10)
        feed.seed("R_100", ["9.99"])
        ticks = await feed.load_history("R_100")
        self.assertEqual([t.last_digit for t in ticks], [0, 5, 0])
        self.assertEqual(feed.digits("R_100"), [0, 5, 0])

    async def test_history_cooldown_reuses_cache(self):
        clock = FakeClock()
        client = FakeClient({"R_100": _history("1.11", "1.12")})
        feed = TickFeed(client, history_cooldown=60, clock=clock)

        await feed.load_history("R_100")
        clock.now += 30
        with self.assertLogs("tick_feed", level="INFO") as logs:
            cached = await feed.load_history("R_100")
        self.assertEqual([t.last_digit for t in cached], [1, 2])
        self.assertEqual(client.calls.count(("history", "R_100")), 1)
        self.assertTrue(any("reusing" in line for line in logs.output))

        clock.now += 31
        await feed.load_history("R_100")
        self.assertEqual(client.calls.count(("history", "R_100")), 2)

    async def test_rate_limited_history_falls_back_to_cache(self):
        client = FakeClient(rate_limited={"R_10"})
        feed = TickFeed(client)
        feed.seed("R_10", ["5.03"])
        ticks = await feed.load_history("R_10")
        self.assertEqual([t.last_digit for t in ticks], [3])

    async def test_history_many_continues_past_failures(self):
        client = FakeClient(
            {"R_100": _history("1.01"), "R_50": _history("2.02")},
            failing={"R_75"},
        )
        feed = TickFeed(client, fetch_spacing=0)
        results = await feed.load_history_many(["R_100", "R_75", "R_50"])
        self.assertEqual(sorted(results), ["R_100", "R_50"])
        self.assertIn(("history", "R_50"), client.calls)

    async def test_disconnect_forgets_then_closes(self):
        client = FakeClient()
        feed = TickFeed(client)
        await feed.connect("R_100")
        await feed.connect("R_50")
        await feed.disconnect()
        tail = client.calls[-3:]
        self.assertEqual(tail[-1], ("close",))
        self.assertEqual({c[1] for c in tail[:2]}, {"sub-R_100", "sub-R_50"})
        self.assertEqual(client.callbacks, {})

    async def test_market_data_persists_and_restores(self):
        with tempfile.TemporaryDirectory() as tmp:
            store = LocalStore(tmp)
            client = FakeClient({"R_25": _history(Decimal("3.40"), Decimal("3.47"))})
            feed = TickFeed(client, store=store)
            await feed.load_history("R_25")

            fresh = TickFeed(FakeClient(), store=store)
            restored = fresh.restore("R_25")
            self.assertEqual(restored, 2)
            self.assertEqual(fresh.digits("R_25"), [0, 7])


if __name__ == "__main__":
    unittest.main()
