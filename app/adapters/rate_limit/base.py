"""Counter store interfaces.

The admission guard depends on this abstraction (not the concrete Redis
client). Store operations never raise to callers: they return either
``StoreOk`` wrapping the value or ``StoreErr`` carrying the failure reason,
and the caller decides what an error means (the guard fails open).
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Generic, TypeVar, Union

T = TypeVar("T")


@dataclass(frozen=True)
class ThrottleRecord:
    """State of one throttle key as reported by the shared store.

    Attributes:
        total_hits: Hits counted in the current window (limit + 1 while blocked).
        time_to_expire_ms: Milliseconds until the window resets, or until the
            block marker expires when ``blocked`` is true.
        blocked: Whether the key is currently blocked.
    """

    total_hits: int
    time_to_expire_ms: int
    blocked: bool


@dataclass(frozen=True)
class StoreOk(Generic[T]):
    value: T


@dataclass(frozen=True)
class StoreErr:
    """Store failure; ``reason`` is a short machine-readable tag."""

    reason: str
    error_type: str | None = None


StoreResult = Union[StoreOk[T], StoreErr]


class AbstractCounterStore(ABC):
    """Interface for shared throttle counter stores."""

    @abstractmethod
    async def increment(
        self,
        key: str,
        window_ms: int,
        limit: int,
        block_duration_ms: int,
    ) -> StoreResult[ThrottleRecord]:
        """Count one hit for ``key`` atomically.

        Args:
            key: Composite throttle key.
            window_ms: Window length applied on the first hit of a window.
            limit: Hits allowed per window; exceeding it blocks the key.
            block_duration_ms: Block marker lifetime.

        Returns:
            StoreOk with the updated record, or StoreErr on failure.
        """
        raise NotImplementedError

    @abstractmethod
    async def get(self, key: str) -> StoreResult[int]:
        """Return the current hit count for ``key`` without mutating it."""
        raise NotImplementedError

    @abstractmethod
    async def reset(self, key: str) -> StoreResult[None]:
        """Clear the counter and block marker for ``key``."""
        raise NotImplementedError

    @abstractmethod
    async def is_blocked(self, key: str) -> StoreResult[int]:
        """Return the remaining block time in milliseconds (0 when not blocked)."""
        raise NotImplementedError

    @abstractmethod
    async def ping(self) -> StoreResult[bool]:
        """Check store connectivity."""
        raise NotImplementedError
