"""
tests/unit/test_timers_and_callbacks.py — Timer, gate and callback registry tests
"""

import asyncio
import pytest

from shellrelay.client.callbacks import CallbackRegistry
from shellrelay.client.timers import CancellableTimer, ResolveOnce


# ─────────────────────────────────────────────────────────────────────────────
# CancellableTimer
# ─────────────────────────────────────────────────────────────────────────────

class TestCancellableTimer:
    @pytest.mark.asyncio
    async def test_fires_after_delay(self):
        fired = []
        timer = CancellableTimer(0.01, lambda: fired.append(True)).start()
        assert timer.active
        await asyncio.sleep(0.05)
        assert fired == [True]
        assert timer.fired
        assert not timer.active

    @pytest.mark.asyncio
    async def test_cancel_prevents_fire(self):
        fired = []
        timer = CancellableTimer(0.01, lambda: fired.append(True)).start()
        timer.cancel()
        await asyncio.sleep(0.05)
        assert fired == []
        assert not timer.fired

    @pytest.mark.asyncio
    async def test_start_twice_schedules_once(self):
        fired = []
        timer = CancellableTimer(0.01, lambda: fired.append(True))
        timer.start()
        timer.start()
        await asyncio.sleep(0.05)
        assert fired == [True]


# ─────────────────────────────────────────────────────────────────────────────
# ResolveOnce
# ─────────────────────────────────────────────────────────────────────────────

class TestResolveOnce:
    def test_first_fire_wins(self):
        gate = ResolveOnce()
        assert not gate.settled
        assert gate.value is None
        assert gate.fire("confirmed") is True
        assert gate.fire("fallback") is False
        assert gate.value == "confirmed"
        assert gate.settled

    def test_falsy_value_still_settles(self):
        gate = ResolveOnce()
        assert gate.fire(None) is True
        assert gate.settled
        assert gate.fire("x") is False


# ─────────────────────────────────────────────────────────────────────────────
# CallbackRegistry
# ─────────────────────────────────────────────────────────────────────────────

class TestCallbackRegistry:
    def test_add_returns_distinct_tokens(self):
        reg = CallbackRegistry("output")
        t1 = reg.add(lambda text: None)
        t2 = reg.add(lambda text: None)
        assert t1 != t2
        assert len(reg) == 2

    def test_dispatch_calls_all(self):
        reg = CallbackRegistry("output")
        seen = []
        reg.add(lambda text: seen.append(("a", text)))
        reg.add(lambda text: seen.append(("b", text)))
        assert reg.dispatch("hi") == 2
        assert seen == [("a", "hi"), ("b", "hi")]

    def test_remove_by_token(self):
        reg = CallbackRegistry("output")
        seen = []
        token = reg.add(seen.append)
        assert reg.remove(token) is True
        assert reg.remove(token) is False
        reg.dispatch("hi")
        assert seen == []

    def test_removal_during_dispatch_takes_effect_immediately(self):
        reg = CallbackRegistry("output")
        seen = []
        tokens = {}

        def first(text):
            seen.append("first")
            reg.remove(tokens["second"])

        tokens["first"] = reg.add(first)
        tokens["second"] = reg.add(lambda text: seen.append("second"))
        reg.dispatch("x")
        assert seen == ["first"]

    def test_add_during_dispatch_not_called_this_round(self):
        reg = CallbackRegistry("output")
        seen = []

        def adder(text):
            seen.append("adder")
            reg.add(lambda t: seen.append("late"))

        reg.add(adder)
        reg.dispatch("x")
        assert seen == ["adder"]
        reg.dispatch("y")
        assert seen.count("late") == 1

    def test_raising_callback_does_not_stop_others(self):
        reg = CallbackRegistry("close")
        seen = []

        def boom():
            raise RuntimeError("sink broke")

        reg.add(boom)
        reg.add(lambda: seen.append("ok"))
        reg.dispatch()
        assert seen == ["ok"]

    def test_clear(self):
        reg = CallbackRegistry("close")
        token = reg.add(lambda: None)
        reg.clear()
        assert token not in reg
        assert len(reg) == 0
