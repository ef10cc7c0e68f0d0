"""
Best-effort fan-out helpers.

Every fan-out stage in the engine (context fetch, ontology search, pair
search) goes through :func:`gather_settled`, which awaits all tasks and
returns one :class:`Outcome` per task in input order.  A task's exception
or timeout is captured in its Outcome instead of failing the stage;
cancellation of the caller is never captured.
"""
from __future__ import annotations

import asyncio
import dataclasses
from typing import (
    Any,
    Awaitable,
    Callable,
    Generic,
    Iterable,
    List,
    Optional,
    Sequence,
    TypeVar,
)

T = TypeVar("T")
R = TypeVar("R")


@dataclasses.dataclass(frozen=True)
class Outcome(Generic[T]):
    """Success value or isolated failure of one task."""

    value: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def settle(aw: Awaitable[T], timeout: Optional[float] = None) -> Outcome[T]:
    """Await *aw* under an optional deadline, capturing any ``Exception``."""
    try:
        if timeout is not None:
            value = await asyncio.wait_for(aw, timeout=timeout)
        else:
            value = await aw
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        return Outcome(error=exc)
    return Outcome(value=value)


async def gather_settled(
    aws: Iterable[Awaitable[T]],
    timeout: Optional[float] = None,
) -> List[Outcome[T]]:
    """Run *aws* concurrently; one Outcome per awaitable, in input order."""
    return list(await asyncio.gather(*(settle(aw, timeout) for aw in aws)))


async def run_in_batches(
    items: Sequence[R],
    fn: Callable[[R], Awaitable[T]],
    batch_size: int,
    timeout: Optional[float] = None,
) -> List[Outcome[T]]:
    """
    Apply *fn* to *items* in sequential batches of *batch_size*, concurrently
    within each batch.  Bounds the number of in-flight calls.
    """
    size = max(1, batch_size)
    outcomes: List[Outcome[Any]] = []
    for start in range(0, len(items), size):
        batch = items[start : start + size]
        outcomes.extend(await gather_settled((fn(item) for item in batch), timeout))
    return outcomes
