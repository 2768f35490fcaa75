from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from gatewarden.service.errors import ServiceError

T = TypeVar("T")


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Tagged success/failure returned by user-facing flows.

    Callers branch on ``success`` and render ``message``; ``unwrap()`` turns a
    failure back into its exception for code that prefers raising.
    """

    success: bool
    value: Optional[T] = None
    error: Optional[ServiceError] = None

    @classmethod
    def ok(cls, value: Optional[T] = None) -> "Outcome[T]":
        return cls(success=True, value=value)

    @classmethod
    def fail(cls, error: ServiceError) -> "Outcome[T]":
        return cls(success=False, error=error)

    @property
    def message(self) -> Optional[str]:
        return self.error.message if self.error else None

    @property
    def error_code(self) -> Optional[str]:
        return self.error.error_code if self.error else None

    def unwrap(self) -> T:
        if not self.success and self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]

    def __bool__(self) -> bool:
        return self.success
