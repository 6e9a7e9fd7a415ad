"""AsyncCell boundary tests: epochs, stale discards, liveness wrapper, disposal."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any

from hypothesis import given, settings
from hypothesis import strategies as st
import pytest

from pagecast.cell import AsyncCell, dependencies_changed
from pagecast.errors import CellDisposedError, InternalError
from pagecast.result import PENDING, Failure, Success
from pagecast.suspend import suspend
from tests.helpers import Gates

pytestmark = pytest.mark.unit


def _recorder(cell: AsyncCell[Any]) -> list[Any]:
    seen: list[Any] = []
    cell.subscribe(lambda _cell, result: seen.append(result))
    return seen


async def _spin(turns: int = 5) -> None:
    for _ in range(turns):
        await asyncio.sleep(0)


# =============================================================================
# Basic lifecycle
# =============================================================================


@pytest.mark.asyncio
async def test_first_observe_is_pending_then_success() -> None:
    cell: AsyncCell[int] = AsyncCell(name="t")

    async def produce(wrap):
        return 42

    assert cell.observe(produce, ("a",)) is PENDING
    assert await cell.settled() == Success(42)
    assert cell.epoch == 1


@pytest.mark.asyncio
async def test_unchanged_dependencies_do_not_rerun_producer() -> None:
    calls = 0

    async def produce(wrap):
        nonlocal calls
        calls += 1
        return calls

    cell: AsyncCell[int] = AsyncCell(produce, name="t")
    cell.update(("a", [1, 2]))
    await cell.settled()
    # Equal by value, different list object.
    cell.update(("a", [1, 2]))
    await cell.settled()

    assert calls == 1
    assert cell.epoch == 1
    assert cell.state == Success(1)


@pytest.mark.asyncio
async def test_update_without_producer_is_an_internal_error() -> None:
    cell: AsyncCell[int] = AsyncCell(name="t")
    with pytest.raises(InternalError):
        cell.update(("a",))


@pytest.mark.asyncio
async def test_sync_raise_publishes_failure_verbatim() -> None:
    err = ValueError("boom")

    def produce(wrap):
        raise err

    cell: AsyncCell[int] = AsyncCell(name="t")
    cell.observe(produce, (1,))
    result = await cell.settled()

    assert isinstance(result, Failure)
    assert result.error is err


@pytest.mark.asyncio
async def test_async_rejection_publishes_failure_verbatim() -> None:
    err = OSError("network unreachable")

    async def produce(wrap):
        await asyncio.sleep(0)
        raise err

    cell: AsyncCell[int] = AsyncCell(name="t")
    cell.observe(produce, (1,))
    result = await cell.settled()

    assert isinstance(result, Failure)
    assert result.error is err


@pytest.mark.asyncio
async def test_plain_value_and_returned_awaitable_are_adopted() -> None:
    async def later() -> str:
        return "later"

    cell: AsyncCell[str] = AsyncCell(name="t")
    cell.observe(lambda wrap: "now", (1,))
    assert await cell.settled() == Success("now")

    cell.observe(lambda wrap: wrap(later()), (2,))
    assert await cell.settled() == Success("later")


# =============================================================================
# Epochs: pending-on-change and stale discards
# =============================================================================


@pytest.mark.asyncio
async def test_dependency_change_resets_to_pending_before_new_result() -> None:
    cell: AsyncCell[str] = AsyncCell(name="t")
    seen = _recorder(cell)

    async def produce_a(wrap):
        return "a"

    async def produce_b(wrap):
        return "b"

    cell.observe(produce_a, ("a",))
    await cell.settled()
    # Synchronously pending, before the new producer has run at all.
    assert cell.observe(produce_b, ("b",)) is PENDING
    await cell.settled()

    assert seen == [Success("a"), PENDING, Success("b")]


@pytest.mark.asyncio
async def test_change_while_pending_does_not_republish_pending() -> None:
    gates = Gates()
    gates.hold("a")
    cell: AsyncCell[str] = AsyncCell(name="t")
    seen = _recorder(cell)

    async def produce_a(wrap):
        await gates.wait("a")
        return "a"

    cell.observe(produce_a, ("a",))
    cell.observe(lambda wrap: "b", ("b",))
    gates.release("a")
    await cell.settled()

    assert seen == [Success("b")]


@pytest.mark.asyncio
async def test_stale_completion_is_discarded_even_if_it_settles_last() -> None:
    gates = Gates()
    gates.hold("old")
    cell: AsyncCell[str] = AsyncCell(name="t")
    seen = _recorder(cell)

    async def produce_old(wrap):
        await gates.wait("old")
        return "old"

    async def produce_new(wrap):
        return "new"

    cell.observe(produce_old, (1,))
    await asyncio.sleep(0)
    cell.observe(produce_new, (2,))
    await asyncio.sleep(0)
    assert cell.state == Success("new")

    gates.release("old")
    await _spin()

    assert cell.state == Success("new")
    assert Success("old") not in seen


@pytest.mark.asyncio
async def test_stale_failure_is_discarded() -> None:
    gates = Gates()
    gates.hold("old")
    cell: AsyncCell[str] = AsyncCell(name="t")

    async def produce_old(wrap):
        await gates.wait("old")
        raise RuntimeError("stale")

    cell.observe(produce_old, (1,))
    cell.observe(lambda wrap: "new", (2,))
    gates.release("old")
    assert await cell.settled() == Success("new")


@given(
    keys=st.lists(st.integers(min_value=0, max_value=3), min_size=1, max_size=8),
    rng=st.randoms(use_true_random=False),
)
@settings(max_examples=40, deadline=None, derandomize=True)
def test_only_the_current_epoch_ever_publishes(
    keys: list[int], rng: random.Random
) -> None:
    """Property: whatever order producers settle in, each publication belongs
    to the epoch that was current when it happened, and the final state is
    the latest epoch's outcome."""

    async def scenario() -> None:
        gates = Gates()
        cell: AsyncCell[int] = AsyncCell(name="prop")
        published: list[tuple[int, Any]] = []
        cell.subscribe(lambda c, r: published.append((c.epoch, r)))

        for key in keys:
            epoch = cell.epoch + 1
            gates.hold(epoch)

            async def produce(wrap, epoch: int = epoch) -> int:
                await wrap(gates.wait(epoch))
                return epoch

            cell.observe(produce, (key,))

        order = list(gates.events)
        rng.shuffle(order)
        for epoch in order:
            gates.release(epoch)
            await asyncio.sleep(0)
        await cell.settled()

        assert cell.state == Success(cell.epoch)
        for epoch_at_publish, result in published:
            if isinstance(result, Success):
                assert result.data == epoch_at_publish

    asyncio.run(scenario())


# =============================================================================
# Liveness wrapper
# =============================================================================


@pytest.mark.asyncio
async def test_wrap_forwards_result_and_exception_while_current() -> None:
    async def value() -> int:
        return 7

    async def fail() -> int:
        raise KeyError("k")

    cell: AsyncCell[int] = AsyncCell(name="t")

    async def ok(wrap):
        return await wrap(value()) + 1

    cell.observe(ok, (1,))
    assert await cell.settled() == Success(8)

    async def bad(wrap):
        return await wrap(fail())

    cell.observe(bad, (2,))
    result = await cell.settled()
    assert isinstance(result, Failure)
    assert isinstance(result.error, KeyError)


@pytest.mark.asyncio
async def test_wrapped_await_never_resumes_disowned_producer() -> None:
    gates = Gates()
    gates.hold("fetch")
    resumed: list[str] = []
    finished: list[str] = []

    async def fetch() -> str:
        await gates.wait("fetch")
        finished.append("fetch")
        return "payload"

    async def produce_old(wrap):
        data = await wrap(fetch())
        resumed.append(data)
        return data

    cell: AsyncCell[str] = AsyncCell(name="t")
    cell.observe(produce_old, (1,))
    await asyncio.sleep(0)
    cell.observe(lambda wrap: "new", (2,))

    gates.release("fetch")
    await _spin()

    # The underlying operation ran to completion; the producer never saw it.
    assert finished == ["fetch"]
    assert resumed == []
    assert cell.state == Success("new")
    assert not cell.busy


@pytest.mark.asyncio
async def test_disowned_wrapped_failure_is_consumed_silently() -> None:
    gates = Gates()
    gates.hold("fetch")

    async def fetch() -> str:
        await gates.wait("fetch")
        raise ConnectionError("late")

    async def produce_old(wrap):
        return await wrap(fetch())

    cell: AsyncCell[str] = AsyncCell(name="t")
    cell.observe(produce_old, (1,))
    await asyncio.sleep(0)
    cell.observe(lambda wrap: "new", (2,))
    gates.release("fetch")

    assert await cell.settled() == Success("new")


@pytest.mark.asyncio
async def test_settled_wakes_when_hung_work_is_replaced() -> None:
    gates = Gates()
    gates.hold("hung")

    async def produce_old(wrap):
        return await wrap(gates.wait("hung"))

    cell: AsyncCell[str] = AsyncCell(name="t")
    cell.observe(produce_old, (1,))
    waiter = asyncio.ensure_future(cell.settled())
    await asyncio.sleep(0)
    assert not waiter.done()
    assert cell.busy

    cell.observe(lambda wrap: "new", (2,))

    assert await asyncio.wait_for(waiter, 1.0) == Success("new")
    assert not cell.busy
    gates.release("hung")
    await _spin()
    assert cell.state == Success("new")


@pytest.mark.asyncio
async def test_cancelled_wrapped_operation_fails_current_epoch() -> None:
    async def produce(wrap):
        inner = asyncio.ensure_future(asyncio.sleep(10))
        outer = wrap(inner)
        inner.cancel()
        return await outer

    cell: AsyncCell[None] = AsyncCell(name="t")
    cell.observe(produce, (1,))
    result = await cell.settled()

    assert isinstance(result, Failure)
    assert isinstance(result.error, asyncio.CancelledError)


# =============================================================================
# Suspension
# =============================================================================


@pytest.mark.asyncio
async def test_suspended_producer_stays_pending_and_idle() -> None:
    cell: AsyncCell[int] = AsyncCell(name="t")
    seen = _recorder(cell)

    cell.observe(lambda wrap: suspend(), (1,))
    await cell.settled()

    assert cell.state is PENDING
    assert not cell.busy
    assert seen == []


@pytest.mark.asyncio
async def test_suspension_returned_from_async_producer_is_honoured() -> None:
    async def produce(wrap):
        await asyncio.sleep(0)
        return suspend()

    cell: AsyncCell[int] = AsyncCell(name="t")
    cell.observe(produce, (1,))
    assert await cell.settled() is PENDING


@pytest.mark.asyncio
async def test_awaiting_the_token_is_reported_as_failure() -> None:
    async def produce(wrap):
        return await suspend()

    cell: AsyncCell[int] = AsyncCell(name="t")
    cell.observe(produce, (1,))
    result = await cell.settled()

    assert isinstance(result, Failure)
    assert isinstance(result.error, TypeError)


# =============================================================================
# Disposal and listeners
# =============================================================================


@pytest.mark.asyncio
async def test_dispose_stops_all_publication() -> None:
    gates = Gates()
    gates.hold("work")
    cell: AsyncCell[str] = AsyncCell(name="t")
    seen = _recorder(cell)

    async def produce(wrap):
        await gates.wait("work")
        return "done"

    cell.observe(produce, (1,))
    cell.dispose()
    gates.release("work")
    await _spin()

    assert cell.disposed
    assert cell.state is PENDING
    assert seen == []
    with pytest.raises(CellDisposedError):
        cell.observe(produce, (2,))
    with pytest.raises(CellDisposedError):
        cell.update((3,))


@pytest.mark.asyncio
async def test_dispose_is_idempotent() -> None:
    cell: AsyncCell[str] = AsyncCell(name="t")
    cell.dispose()
    cell.dispose()
    assert cell.disposed


@pytest.mark.asyncio
async def test_unsubscribe_stops_notifications() -> None:
    cell: AsyncCell[int] = AsyncCell(name="t")
    seen: list[Any] = []
    unsubscribe = cell.subscribe(lambda _c, r: seen.append(r))

    cell.observe(lambda wrap: 1, (1,))
    await cell.settled()
    unsubscribe()
    unsubscribe()
    cell.observe(lambda wrap: 2, (2,))
    await cell.settled()

    assert seen == [Success(1)]


@pytest.mark.asyncio
async def test_failing_listener_is_logged_and_others_still_run(
    caplog: pytest.LogCaptureFixture,
) -> None:
    cell: AsyncCell[int] = AsyncCell(name="noisy")
    seen: list[Any] = []

    def broken(_cell, _result) -> None:
        raise RuntimeError("listener bug")

    cell.subscribe(broken)
    cell.subscribe(lambda _c, r: seen.append(r))

    with caplog.at_level(logging.WARNING, logger="pagecast.cell"):
        cell.observe(lambda wrap: 5, (1,))
        await cell.settled()

    assert seen == [Success(5)]
    assert "listener" in caplog.text


# =============================================================================
# Dependency comparison
# =============================================================================


class _Incomparable:
    def __eq__(self, other: object) -> bool:
        raise TypeError("cannot compare")

    __hash__ = object.__hash__


@pytest.mark.parametrize(
    ("old", "new", "changed"),
    [
        ((1, "a"), (1, "a"), False),
        (({"k": 1},), ({"k": 1},), False),
        ((1,), (2,), True),
        ((1,), (1, None), True),
        ((), (), False),
    ],
)
def test_dependencies_changed(old: tuple, new: tuple, changed: bool) -> None:
    assert dependencies_changed(old, new) is changed


def test_incomparable_dependencies_count_as_changed() -> None:
    a, b = _Incomparable(), _Incomparable()
    assert dependencies_changed((a,), (a,)) is False
    assert dependencies_changed((a,), (b,)) is True
