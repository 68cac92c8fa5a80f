"""
Tests for CallbackBridge and the context handle table.
"""

from concurrent.futures import Future

import pytest

from genpool.engine.replica import NativeStepResult
from genpool.errors import ContextOwnershipError
from genpool.generation.callback import CONTEXT_TABLE, CallbackBridge, to_step_result


def native_step(step=0, batch_id=0, has_log_prob=True):
    return NativeStepResult(
        step=step,
        batch_id=batch_id,
        token_id=100 + step,
        token=f"tok{step}",
        log_prob=-0.25,
        has_log_prob=has_log_prob,
        is_last=False,
    )


@pytest.mark.unit
def test_to_step_result_drops_missing_log_prob():
    """Test log_prob is None when the engine has none."""
    assert to_step_result(native_step()).log_prob == -0.25
    assert to_step_result(native_step(has_log_prob=False)).log_prob is None


@pytest.mark.unit
def test_acquire_moves_context_into_table():
    """Test the context is only reachable through the handle while lent."""
    context = {"calls": 0}
    bridge = CallbackBridge(lambda step, ctx: True, context)
    handle = bridge.acquire()

    assert handle in CONTEXT_TABLE
    assert bridge.handle == handle
    with pytest.raises(ContextOwnershipError):
        bridge.context

    assert bridge.reclaim() is context
    assert handle not in CONTEXT_TABLE
    assert bridge.context is context


@pytest.mark.unit
def test_step_function_borrows_context():
    """Test every step call receives the lent context."""
    context = []

    def callback(step, ctx):
        ctx.append(step.step)
        return step.step < 1

    bridge = CallbackBridge(callback, context)
    bridge.acquire()
    step = bridge.step_function()

    assert step(native_step(0)) is True
    assert step(native_step(1)) is False
    bridge.reclaim()
    assert context == [0, 1]


@pytest.mark.unit
def test_step_after_reclaim_raises():
    """Test a step delivered after reclaim cannot reach the context."""
    bridge = CallbackBridge(lambda step, ctx: True, object())
    bridge.acquire()
    step = bridge.step_function()
    bridge.reclaim()

    with pytest.raises(ContextOwnershipError):
        step(native_step())


@pytest.mark.unit
def test_bridge_is_single_use():
    """Test a bridge cannot lend its context twice."""
    bridge = CallbackBridge(lambda step, ctx: True)
    bridge.acquire()
    bridge.reclaim()

    with pytest.raises(ContextOwnershipError):
        bridge.acquire()


@pytest.mark.unit
def test_step_function_requires_acquire():
    """Test step_function() needs a lent context."""
    with pytest.raises(ContextOwnershipError):
        CallbackBridge(lambda step, ctx: True).step_function()


@pytest.mark.unit
def test_reclaim_runs_once():
    """Test on_reclaim runs exactly once whatever the number of calls."""
    reclaimed = []
    context = object()
    bridge = CallbackBridge(lambda step, ctx: True, context, on_reclaim=reclaimed.append)
    bridge.acquire()

    bridge.reclaim()
    bridge.reclaim()

    assert reclaimed == [context]
    assert bridge.reclaimed
    assert bridge.wait_reclaimed(timeout=0)


@pytest.mark.unit
def test_attach_reclaims_after_last_future():
    """Test the context comes back once every attached future is done."""
    reclaimed = []
    bridge = CallbackBridge(lambda step, ctx: True, "ctx", on_reclaim=reclaimed.append)
    bridge.acquire()
    futures = [Future() for _ in range(3)]
    bridge.attach(futures)

    futures[0].set_result(None)
    futures[2].set_exception(RuntimeError("failed"))
    assert not bridge.reclaimed

    futures[1].set_result(None)
    assert reclaimed == ["ctx"]
    assert bridge.reclaimed


@pytest.mark.unit
def test_attach_nothing_reclaims_immediately():
    """Test attaching no futures reclaims at once."""
    bridge = CallbackBridge(lambda step, ctx: True)
    bridge.acquire()
    bridge.attach([])
    assert bridge.reclaimed


@pytest.mark.unit
def test_callback_must_be_callable():
    """Test a non-callable callback is rejected."""
    with pytest.raises(TypeError):
        CallbackBridge("not callable")


@pytest.mark.unit
def test_failing_on_reclaim_still_marks_reclaimed():
    """Test an exception from on_reclaim does not leave waiters blocked."""

    def broken_hook(context):
        raise ValueError("hook failed")

    bridge = CallbackBridge(lambda step, ctx: True, "ctx", on_reclaim=broken_hook)
    handle = bridge.acquire()

    assert bridge.reclaim() == "ctx"
    assert bridge.reclaimed
    assert bridge.wait_reclaimed(timeout=0)
    assert handle not in CONTEXT_TABLE
    assert bridge.context == "ctx"


@pytest.mark.unit
def test_failing_on_reclaim_from_done_callback():
    """Test the reclaimed event is set when the hook fails on a future callback."""

    def broken_hook(context):
        raise ValueError("hook failed")

    bridge = CallbackBridge(lambda step, ctx: True, on_reclaim=broken_hook)
    bridge.acquire()
    future = Future()
    bridge.attach([future])
    future.set_result(None)

    assert bridge.wait_reclaimed(timeout=5)
