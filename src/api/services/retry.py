"""Retry policy shared by outbound calls."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


class RetryExhausted(Exception):
    """Raised once every attempt allowed by a :class:`RetryPolicy` has failed."""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(f"gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


def exponential_backoff(base: float = 2.0) -> Callable[[int], float]:
    def _delay(attempt: int) -> float:
        return float(base ** attempt)

    return _delay


@dataclass(frozen=True)
class RetryPolicy:
    """How many times to try an operation and how long to wait in between.

    ``backoff`` receives the zero-based number of the attempt that just failed
    and returns the delay in seconds before the next one.
    """

    max_attempts: int = 4
    backoff: Callable[[int], float] = field(default_factory=exponential_backoff)
    retry_on: Tuple[Type[BaseException], ...] = (Exception,)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def exponential(cls, max_retries: int, base: float = 2.0) -> "RetryPolicy":
        return cls(max_attempts=max_retries + 1, backoff=exponential_backoff(base))

    def delays(self) -> list[float]:
        return [self.backoff(attempt) for attempt in range(self.max_attempts - 1)]

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        sleep: Sleep = asyncio.sleep,
        on_failure: Optional[Callable[[int, BaseException], None]] = None,
    ) -> T:
        for attempt in range(self.max_attempts):
            try:
                return await operation()
            except self.retry_on as exc:
                if on_failure is not None:
                    on_failure(attempt, exc)
                if attempt + 1 >= self.max_attempts:
                    raise RetryExhausted(attempt + 1, exc) from exc
                await sleep(self.backoff(attempt))
        raise AssertionError("unreachable")  # pragma: no cover
