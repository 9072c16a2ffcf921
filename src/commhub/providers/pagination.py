"""
Pagination and rate-limit driver shared by all adapters.

- paginate: walk a cursor API with a hard page bound and an optional
  short-circuit predicate.
- call_with_retry: retry one provider call on 429 / transient errors with a
  bounded attempt count.
- gather_in_batches: run one call per item with bounded concurrency; each item
  yields its own Outcome so a failure never aborts its siblings.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from typing import Generic, TypeVar

import anyio

from commhub.providers.interface import (
    ProviderError,
    ProviderResponseError,
    RateLimitedError,
    TransientProviderError,
)
from commhub.shared.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")

Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True)
class Page(Generic[T]):
    items: list[T]
    next_cursor: str | None = None


@dataclass
class PaginationResult(Generic[T]):
    """Items collected by paginate().

    ``complete`` is False when the walk stopped at the page bound or on a
    failing page after the first one.
    """

    items: list[T] = field(default_factory=list)
    pages: int = 0
    complete: bool = True
    error: ProviderError | None = None


async def paginate(
    fetch_page: Callable[[str | None], Awaitable[Page[T]]],
    *,
    max_pages: int,
    stop_when: Callable[[list[T]], bool] | None = None,
    label: str = "",
) -> PaginationResult[T]:
    """Walk pages until the cursor runs out, ``max_pages`` or ``stop_when``.

    Raises:
        ProviderError: If the very first page fails (nothing to salvage).
    """
    result: PaginationResult[T] = PaginationResult()
    cursor: str | None = None

    while True:
        try:
            page = await fetch_page(cursor)
        except ProviderError as exc:
            if result.pages == 0:
                raise
            logger.warning(
                "Pagination aborted, keeping partial results",
                extra={
                    "resource": label,
                    "pages": result.pages,
                    "items": len(result.items),
                    "error": str(exc),
                },
            )
            result.complete = False
            result.error = exc
            return result

        result.pages += 1
        result.items.extend(page.items)
        cursor = page.next_cursor

        if not cursor:
            return result
        if stop_when is not None and stop_when(result.items):
            return result
        if result.pages >= max_pages:
            logger.warning(
                "Reached max page limit, sync may be incomplete",
                extra={"resource": label, "max_pages": max_pages, "items": len(result.items)},
            )
            result.complete = False
            return result


async def call_with_retry(
    fn: Callable[[], Awaitable[R]],
    *,
    max_attempts: int = 3,
    fallback_delay: float = 2.0,
    sleep: Sleep | None = None,
    label: str = "",
) -> R:
    """Call ``fn``, retrying on rate limits and transient failures.

    The provider's Retry-After wins over ``fallback_delay``. After
    ``max_attempts`` the last error propagates to the caller.
    """
    sleep = sleep or anyio.sleep
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except TransientProviderError as exc:
            if attempt >= max_attempts:
                logger.warning(
                    "Retry budget exhausted",
                    extra={"resource": label, "attempts": attempt, "error": str(exc)},
                )
                raise
            delay = fallback_delay
            if isinstance(exc, RateLimitedError) and exc.retry_after is not None:
                delay = exc.retry_after
            logger.info(
                "Provider call throttled, backing off",
                extra={"resource": label, "attempt": attempt, "delay_seconds": delay},
            )
            await sleep(delay)


@dataclass(frozen=True)
class Outcome(Generic[T, R]):
    item: T
    value: R | None = None
    error: ProviderError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


async def gather_in_batches(
    items: Sequence[T],
    fn: Callable[[T], Awaitable[R]],
    *,
    batch_size: int = 5,
) -> list[Outcome[T, R]]:
    """Run ``fn`` for every item, ``batch_size`` at a time, preserving order.

    Any failure stays with its own item: provider errors are kept as they are,
    anything else is wrapped in ProviderResponseError.
    """
    outcomes: list[Outcome[T, R] | None] = [None] * len(items)

    async def _run(index: int, item: T) -> None:
        try:
            outcomes[index] = Outcome(item=item, value=await fn(item))
        except ProviderError as exc:
            outcomes[index] = Outcome(item=item, error=exc)
        except Exception as exc:
            logger.warning("Unexpected error in batch item", extra={"error": repr(exc)}, exc_info=True)
            outcomes[index] = Outcome(item=item, error=ProviderResponseError(f"Unexpected error: {exc!r}"))

    for start in range(0, len(items), batch_size):
        async with anyio.create_task_group() as tg:
            for offset, item in enumerate(items[start : start + batch_size]):
                tg.start_soon(_run, start + offset, item)

    return [o for o in outcomes if o is not None]
