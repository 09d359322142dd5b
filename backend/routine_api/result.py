# ---------------------------------------------------------------------------
# result.py
#
# A small Result[T, E] type.
#
# Operations that have an expected failure mode (input validation) return a
# Result instead of raising. Exactly one side is populated: build instances
# through `Result.ok()` / `Result.err()` and branch on `is_ok` / `is_err`.
# Reading the side that is not populated raises ValueError.
# ---------------------------------------------------------------------------

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Generic, TypeVar

T = TypeVar("T")
E = TypeVar("E")

_MISSING: Any = object()


@dataclass(frozen=True)
class Result(Generic[T, E]):
    _value: Any = _MISSING
    _error: Any = _MISSING

    def __post_init__(self) -> None:
        if (self._value is _MISSING) == (self._error is _MISSING):
            raise ValueError("Result must hold exactly one of value or error")

    @classmethod
    def ok(cls, value: T) -> "Result[T, E]":
        return cls(_value=value)

    @classmethod
    def err(cls, error: E) -> "Result[T, E]":
        return cls(_error=error)

    @property
    def is_ok(self) -> bool:
        return self._error is _MISSING

    @property
    def is_err(self) -> bool:
        return self._error is not _MISSING

    @property
    def value(self) -> T:
        if self.is_err:
            raise ValueError("Called value on Result.err")
        return self._value

    @property
    def error(self) -> E:
        if self.is_ok:
            raise ValueError("Called error on Result.ok")
        return self._error

    def __repr__(self) -> str:
        if self.is_ok:
            return f"Result.ok({self._value!r})"
        return f"Result.err({self._error!r})"
