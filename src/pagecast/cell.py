"""Cancellable async cell.

An ``AsyncCell`` runs one producer per dependency epoch and publishes its
settled outcome as ``Pending | Success | Failure``. Only the producer started
for the *current* epoch may publish; anything started earlier is disowned
the moment the dependencies change.

Usage (inside a running event loop)::

    cell = AsyncCell(name="bytes")

    async def load(wrap):
        response = await wrap(client.get(url))
        return response.content

    cell.observe(load, (url,))   # Pending, producer scheduled
    await cell.settled()
    cell.state                   # Success(data=b"...") or Failure(error=...)

Disowning is observational: the cell never aborts the work a producer
started. It only guarantees that a disowned producer can no longer publish,
and that awaitables passed through ``wrap`` stop delivering results to it.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import TYPE_CHECKING, Any, Generic, Protocol, TypeAlias, TypeVar

from pagecast.errors import CellDisposedError, InternalError
from pagecast.result import PENDING, Failure, Pending, Success
from pagecast.suspend import SUSPENDED

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Iterable

    from pagecast.result import AsyncResult

log = logging.getLogger(__name__)

S = TypeVar("S")
T = TypeVar("T")


class Wrap(Protocol):
    """Liveness wrapper handed to every producer invocation.

    ``await wrap(aw)`` returns or raises what *aw* does while the producer's
    epoch is current. Once the epoch is disowned the wrapped operation still
    runs to completion, but its outcome is dropped and the producer's await
    raises ``asyncio.CancelledError`` instead. ``finally`` blocks and
    ``except BaseException`` handlers in a disowned producer therefore run;
    they must not publish anything or start follow-up work that assumes the
    result arrived.
    """

    def __call__(self, awaitable: Awaitable[T], /) -> asyncio.Future[T]: ...


Producer: TypeAlias = "Callable[[Wrap], Any]"
Listener: TypeAlias = "Callable[[AsyncCell[Any], AsyncResult[Any, Any]], None]"


def consume_future_exception(fut: asyncio.Future[Any]) -> None:
    """Avoid 'Future exception was never retrieved' for discarded futures."""
    try:
        _ = fut.exception()
    except asyncio.CancelledError:
        return


def _same(a: object, b: object) -> bool:
    if a is b:
        return True
    try:
        return bool(a == b)
    except Exception:
        # Values that cannot be compared count as changed.
        return False


def dependencies_changed(old: tuple[Any, ...], new: tuple[Any, ...]) -> bool:
    """Return True when any position differs by identity and by value."""
    if len(old) != len(new):
        return True
    return not all(_same(a, b) for a, b in zip(old, new, strict=True))


class AsyncCell(Generic[S]):
    """Track the lifecycle of one async operation keyed by a dependency tuple.

    The cell owns its epoch counter, published state, listeners and tasks;
    nothing is shared between cells. All methods must be called from the
    event loop thread.
    """

    def __init__(self, producer: Producer | None = None, *, name: str = "cell"):
        """Create an idle cell. Nothing runs until ``observe`` or ``update``."""
        self.name = name
        self._producer = producer
        self._dependencies: tuple[Any, ...] | None = None
        self._epoch = 0
        self._state: AsyncResult[S, Any] = PENDING
        self._listeners: list[Listener] = []
        # Running tasks mapped to the epoch that started them.
        self._tasks: dict[asyncio.Task[Any], int] = {}
        self._epoch_changed: asyncio.Future[None] | None = None
        self._disposed = False

    @property
    def state(self) -> AsyncResult[S, Any]:
        return self._state

    @property
    def epoch(self) -> int:
        return self._epoch

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def busy(self) -> bool:
        """True while the current epoch's producer (or a wrapped awaitable) runs.

        Work left over from disowned epochs may still be running; it can no
        longer publish, so it does not count.
        """
        return bool(self._current_tasks())

    def observe(
        self, producer: Producer, dependencies: Iterable[Any]
    ) -> AsyncResult[S, Any]:
        """Adopt *producer* and re-evaluate against *dependencies*.

        The producer only runs when the dependencies differ from the previous
        call (or on the first call). Returns the state after the check, which
        is ``Pending`` whenever a new epoch started.
        """
        self._ensure_live()
        self._producer = producer
        return self.update(dependencies)

    def update(self, dependencies: Iterable[Any]) -> AsyncResult[S, Any]:
        """Re-evaluate the stored producer against *dependencies*."""
        self._ensure_live()
        producer = self._producer
        if producer is None:
            raise InternalError(
                f"Cell {self.name!r} has no producer",
                hint="Pass a producer to AsyncCell() or call observe() first.",
            )

        deps = tuple(dependencies)
        if self._dependencies is not None and not dependencies_changed(
            self._dependencies, deps
        ):
            return self._state

        self._dependencies = deps
        self._epoch += 1
        epoch = self._epoch
        self._signal_epoch_change()
        log.debug("%s: epoch %d started", self.name, epoch)

        # Consumers never see the previous epoch's outcome once inputs change.
        self._publish(PENDING)
        if self._disposed or epoch != self._epoch:
            # A listener disposed the cell or started a newer epoch.
            return self._state

        task = asyncio.get_running_loop().create_task(
            self._run(epoch, producer),
            name=f"pagecast.cell:{self.name}:{epoch}",
        )
        self._track(task, epoch)
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call *listener(cell, state)* on every publication.

        Returns a callable that removes the listener.
        """
        self._ensure_live()
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def settled(self) -> AsyncResult[S, Any]:
        """Wait until the current epoch has no producer or wrapped awaitable running.

        Disowned work is not waited on, so a hung request that was replaced
        never blocks this. A suspended producer finishes immediately, so this
        never waits on a suspension either. Waiting does not cancel anything
        if the caller is cancelled.
        """
        while tasks := self._current_tasks():
            # Wake up on a new epoch too; its work replaces what we waited on.
            changed = self._epoch_change_waiter()
            await asyncio.wait({*tasks, changed}, return_when=asyncio.FIRST_COMPLETED)
        return self._state

    def dispose(self) -> None:
        """Disown the current epoch and stop publishing for good."""
        if self._disposed:
            return
        self._disposed = True
        self._listeners.clear()
        self._signal_epoch_change()
        log.debug("%s: disposed at epoch %d", self.name, self._epoch)

    # --- internals ---

    def _ensure_live(self) -> None:
        if self._disposed:
            raise CellDisposedError(f"Cell {self.name!r} has been disposed")

    def _is_current(self, epoch: int) -> bool:
        return not self._disposed and epoch == self._epoch

    def _track(self, task: asyncio.Task[Any], epoch: int) -> None:
        self._tasks[task] = epoch
        task.add_done_callback(self._untrack)

    def _untrack(self, task: asyncio.Task[Any]) -> None:
        self._tasks.pop(task, None)

    def _current_tasks(self) -> set[asyncio.Task[Any]]:
        return {t for t, e in self._tasks.items() if self._is_current(e)}

    def _epoch_change_waiter(self) -> asyncio.Future[None]:
        if self._epoch_changed is None:
            self._epoch_changed = asyncio.get_running_loop().create_future()
        return self._epoch_changed

    def _signal_epoch_change(self) -> None:
        waiter, self._epoch_changed = self._epoch_changed, None
        if waiter is not None and not waiter.done():
            waiter.set_result(None)

    async def _run(self, epoch: int, producer: Producer) -> None:
        wrap = self._make_wrap(epoch)
        try:
            outcome = producer(wrap)
            while outcome is not SUSPENDED and inspect.isawaitable(outcome):
                outcome = await outcome
        except asyncio.CancelledError as exc:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            # Something awaited by the producer was cancelled, not the producer.
            self._settle(epoch, Failure(exc))
            return
        except Exception as exc:
            self._settle(epoch, Failure(exc))
            return

        if outcome is SUSPENDED:
            log.debug("%s: epoch %d suspended", self.name, epoch)
            return
        self._settle(epoch, Success(outcome))

    def _settle(self, epoch: int, result: AsyncResult[S, Any]) -> None:
        if not self._is_current(epoch):
            log.debug(
                "%s: discarded %s from stale epoch %d (current %d)",
                self.name,
                result.status,
                epoch,
                self._epoch,
            )
            return
        self._publish(result)

    def _publish(self, result: AsyncResult[S, Any]) -> None:
        if result is self._state or (
            isinstance(result, Pending) and isinstance(self._state, Pending)
        ):
            return
        self._state = result
        for listener in list(self._listeners):
            try:
                listener(self, result)
            except Exception:
                log.warning(
                    "%s: listener %r failed", self.name, listener, exc_info=True
                )

    def _make_wrap(self, epoch: int) -> Wrap:
        def wrap(awaitable: Awaitable[T], /) -> asyncio.Future[T]:
            inner = asyncio.ensure_future(awaitable)
            if isinstance(inner, asyncio.Task):
                self._track(inner, epoch)
            outer: asyncio.Future[T] = asyncio.get_running_loop().create_future()

            def forward(done: asyncio.Future[T]) -> None:
                if outer.done():
                    consume_future_exception(done)
                    return
                if not self._is_current(epoch):
                    consume_future_exception(done)
                    log.debug(
                        "%s: wrapped result for stale epoch %d dropped",
                        self.name,
                        epoch,
                    )
                    # The inner work is finished; unwind the parked producer.
                    outer.cancel()
                    return
                if done.cancelled():
                    outer.cancel()
                    return
                exc = done.exception()
                if exc is not None:
                    outer.set_exception(exc)
                else:
                    outer.set_result(done.result())

            inner.add_done_callback(forward)
            return outer

        return wrap
