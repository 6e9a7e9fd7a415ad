"""The suspension token: a producer's way of saying "not runnable yet".

A producer returns ``suspend()`` when an upstream dependency has not
succeeded. The owning cell already publishes ``Pending`` at the start of an
epoch and only changes state when a producer settles, so a producer that
never settles keeps its stage pending until the dependencies change.

The token is inert. It holds no future, timer or callback, so abandoning it
costs nothing.
"""

from __future__ import annotations

from typing import Final, NoReturn


class Suspension:
    """Sentinel type for ``SUSPENDED``. Do not instantiate."""

    __slots__ = ()

    def __repr__(self) -> str:
        return "SUSPENDED"

    def __bool__(self) -> bool:
        return False

    def __await__(self) -> NoReturn:
        raise TypeError("return suspend() from the producer instead of awaiting it")

    def __reduce__(self) -> str:
        return "SUSPENDED"


SUSPENDED: Final = Suspension()


def suspend() -> Suspension:
    """Return the suspension token."""
    return SUSPENDED


def is_suspended(value: object) -> bool:
    return value is SUSPENDED
