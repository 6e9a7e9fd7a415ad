"""Three-state async result published by cells and pipeline stages.

Consumers pattern-match on the concrete type (or read ``status``) instead of
wrapping every stage access in try/except.
"""

from __future__ import annotations

import dataclasses
import typing

TSuccess = typing.TypeVar("TSuccess")
TFailure = typing.TypeVar("TFailure")
S = typing.TypeVar("S")
E = typing.TypeVar("E")


@dataclasses.dataclass(frozen=True, slots=True)
class Pending:
    """No outcome yet."""

    @property
    def status(self) -> typing.Literal["pending"]:
        return "pending"


@dataclasses.dataclass(frozen=True, slots=True)
class Success(typing.Generic[TSuccess]):
    """The producer settled with a value."""

    data: TSuccess

    @property
    def status(self) -> typing.Literal["success"]:
        return "success"


@dataclasses.dataclass(frozen=True, slots=True)
class Failure(typing.Generic[TFailure]):
    """The producer raised; ``error`` is the exception as raised."""

    error: TFailure

    @property
    def status(self) -> typing.Literal["failure"]:
        return "failure"


# The only Pending instance the library publishes.
PENDING = Pending()

AsyncResult: typing.TypeAlias = Pending | Success[S] | Failure[E]


def is_settled(result: object) -> bool:
    """Return True for ``Success`` or ``Failure``."""
    return isinstance(result, Success | Failure)
