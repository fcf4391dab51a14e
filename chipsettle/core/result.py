"""
chipsettle/core/result.py

Single return convention for every public operation.

A Result holds either a value or a ChipSettleError, never both.
Returned, not raised, so callers can choose hard fail vs log:

    res = optimizer.optimize("s1")
    if not res:
        log.warning(res.error)
    plan = res.unwrap()        # raises the carried error on failure
"""

from dataclasses import dataclass
from typing import Callable, Generic, Optional, TypeVar

from chipsettle.core.exceptions import ChipSettleError

T = TypeVar("T")
U = TypeVar("U")


@dataclass(frozen=True)
class Result(Generic[T]):
    value: Optional[T]               = None
    error: Optional[ChipSettleError] = None

    def __post_init__(self) -> None:
        if self.error is not None and self.value is not None:
            raise ValueError("Result cannot carry both a value and an error")

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ChipSettleError) -> "Result[T]":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def retryable(self) -> bool:
        return self.error is not None and self.error.retryable

    def __bool__(self) -> bool:
        return self.ok

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value

    def map(self, fn: Callable[[T], U]) -> "Result[U]":
        if self.error is not None:
            return Result(error=self.error)
        return Result(value=fn(self.value))

    def to_dict(self) -> dict:
        if self.error is not None:
            return {"ok": False, "error": self.error.to_dict()}
        value = self.value.to_dict() if hasattr(self.value, "to_dict") else self.value
        return {"ok": True, "value": value}


def capture(fn: Callable[..., T], *args, **kwargs) -> Result[T]:
    """
    Run fn and convert a ChipSettleError into a failed Result.
    Any other exception is a bug and propagates.
    """
    try:
        return Result.success(fn(*args, **kwargs))
    except ChipSettleError as exc:
        return Result.failure(exc)
