from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


@dataclass(frozen=True)
class AnalyticsError:
    """
    Why a best-effort analytics step did not complete.

    code: short machine tag ("persistence", "geolocation", "not_configured",
    "invalid_input", "delivery")
    """

    code: str
    message: str
    cause: Optional[BaseException] = None

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Outcome of an analytics operation. Callers may inspect it; nothing forces
    them to, and producing one never raises.
    """

    value: Optional[T] = None
    error: Optional[AnalyticsError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap_or(self, default: T) -> T:
        if self.error is not None or self.value is None:
            return default
        return self.value

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, code: str, message: str, cause: Optional[BaseException] = None) -> "Result[T]":
        return cls(error=AnalyticsError(code=code, message=message, cause=cause))
