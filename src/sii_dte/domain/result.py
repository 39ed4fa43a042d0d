"""
Result monad — railway-oriented error flow for adapters and the pipeline.

A Result[T] is either Success(value: T) or Failure(error: FailureDescription).
The signing and document layers raise typed DteError exceptions; the
authority client and the pipeline wrap those calls with
Result.from_computation so that failures travel on the failure track:

    ┌───────────┐   flat_map    ┌───────────┐   flat_map    ┌──────────┐
    │ assemble  │──Success──────│   seed/   │──Success──────│  submit  │──→ Result[T]
    │           │               │   token   │               │          │
    └─────┬─────┘               └─────┬─────┘               └─────┬────┘
          │ Failure                   │ Failure                   │ Failure
          └───────────────────────────┴───────────────────────────┴──→ Result[T]

A FailureDescription keeps the ErrorCode of the raised DteError, the
exception itself (never swallowed) and the protocol stage it happened in.
"""

from __future__ import annotations

import traceback
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from sii_dte.domain.errors import DteError, ErrorCode

T = TypeVar("T")
U = TypeVar("U")
R = TypeVar("R")


@dataclass(frozen=True, slots=True)
class FailureDescription:
    """
    Immutable failure descriptor.

    `stage` names the protocol stage (or pipeline step) during which the
    failure occurred, e.g. "seed_requested" or "assembly".
    """

    code: ErrorCode
    message: str
    exception: BaseException | None = field(default=None, repr=False)
    stage: str | None = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))

    @property
    def retryable(self) -> bool:
        return self.code.retryable

    def full_stack_trace(self) -> str:
        if self.exception is None:
            return self.message
        tb = "".join(
            traceback.format_exception(
                type(self.exception), self.exception, self.exception.__traceback__
            )
        )
        return f"{self.message}\n{tb}"


class Result(Generic[T]):
    """
    Either Success(value: T) or Failure(error: FailureDescription).

    Every transformation is a case of `either`, so a failure short-circuits
    the rest of the chain untouched.

        >>> Result.success(21).map(lambda x: x * 2).value()
        42
    """

    # ──────────────────────── Introspection ────────────────────────

    def is_success(self) -> bool:
        return isinstance(self, Success)

    def is_failure(self) -> bool:
        return isinstance(self, Failure)

    def value(self) -> T:
        """The success value. Raises ValueError on a Failure."""
        return self.either(_identity, _no_value)

    def error(self) -> FailureDescription:
        """The failure description. Raises ValueError on a Success."""
        return self.either(_no_error, _identity)

    # ──────────────────────── Transformations ────────────────────────

    def either(
        self,
        on_success: Callable[[T], R],
        on_failure: Callable[[FailureDescription], R],
    ) -> R:
        match self:
            case Success(v):
                return on_success(v)
            case Failure(err):
                return on_failure(err)
        raise TypeError(f"not a Result: {self!r}")  # pragma: no cover

    def map(self, mapper: Callable[[T], U]) -> Result[U]:
        return self.flat_map(lambda v: Success(mapper(v)))

    def flat_map(self, mapper: Callable[[T], Result[U]]) -> Result[U]:
        """Continue with a step that itself returns a Result."""
        return self.either(mapper, Failure)

    def peek(self, action: Callable[[T], Any]) -> Result[T]:
        """Run a side effect (typically logging) on success; return self."""
        if isinstance(self, Success):
            action(self._value)
        return self

    def peek_failure(self, action: Callable[[FailureDescription], Any]) -> Result[T]:
        if isinstance(self, Failure):
            action(self._error)
        return self

    def raise_on_failure(self) -> T:
        """Return the value, or re-raise the exception carried by the failure."""
        return self.either(_identity, _reraise)

    # ──────────────────────── Factories ────────────────────────

    @staticmethod
    def success(value: T) -> Result[T]:
        return Success(value)

    @staticmethod
    def failure(
        code: ErrorCode,
        message: str,
        exception: BaseException | None = None,
        stage: str | None = None,
    ) -> Result[T]:
        return Failure(
            FailureDescription(code=code, message=message, exception=exception, stage=stage)
        )

    @staticmethod
    def from_computation(
        computation: Callable[[], T],
        error_code: ErrorCode,
        error_message: str,
        stage: str | None = None,
    ) -> Result[T]:
        """
        Run a computation that may raise and capture the outcome.

        A raised DteError keeps its own ErrorCode; any other exception is
        filed under `error_code`. The exception is attached either way.

            return Result.from_computation(
                self._do_request_seed,
                ErrorCode.PROTOCOL_ERROR,
                "Seed request failed",
                stage="seed_requested",
            )
        """
        try:
            return Result.success(computation())
        except DteError as e:
            return Result.failure(e.error_code, f"{error_message}: {e}", e, stage)
        except Exception as e:
            return Result.failure(error_code, f"{error_message}: {e}", e, stage)

    # ──────────────────────── Dunder ────────────────────────

    def __bool__(self) -> bool:
        return self.is_success()


@dataclass(frozen=True, slots=True)
class Success(Result[T]):
    """The success track — wraps a value of type T."""

    _value: T

    def __post_init__(self) -> None:
        if self._value is None:
            raise TypeError("Success value must not be None")

    def __repr__(self) -> str:
        return f"Success({self._value!r})"


@dataclass(frozen=True, slots=True)
class Failure(Result[T]):
    """The failure track — wraps a FailureDescription."""

    _error: FailureDescription

    def __repr__(self) -> str:
        return f"Failure({self._error.code.value}: {self._error.message!r})"


def _identity(x: Any) -> Any:
    return x


def _no_value(error: FailureDescription) -> Any:
    raise ValueError(f"Cannot get value from a Failure: {error.message}")


def _no_error(value: Any) -> Any:
    raise ValueError(f"Cannot get error from a Success: {value!r}")


def _reraise(error: FailureDescription) -> Any:
    if error.exception is not None:
        raise error.exception
    raise DteError(error.message)
