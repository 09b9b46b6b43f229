"""Bounded asyncio worker pool.

``run_pool`` runs at most ``limit`` handler calls concurrently over a list of
items. Workers claim the next index from a shared counter; the claim is a
plain read-and-increment with no ``await`` in between, so under asyncio's
cooperative scheduling no index is ever handed to two workers.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Sequence

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, int, int], None]


@dataclass
class PoolFailure:
    index: int
    item: Any
    error: BaseException


@dataclass
class PoolResult:
    """Per-item results in input order; failed slots hold None (tolerant mode)."""

    results: list
    failures: list[PoolFailure] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failures)


async def run_pool(
    items: Sequence,
    limit: int,
    handler: Callable[[Any, int], Awaitable[Any]],
    *,
    label: str = "pool",
    on_progress: ProgressCallback | None = None,
    tolerant: bool = False,
    fatal: tuple[type[BaseException], ...] = (),
) -> PoolResult:
    """Run ``handler(item, index)`` over ``items`` with ``limit`` workers.

    strict (default): the first failure cancels the other workers and
    propagates. tolerant: failures are logged, recorded in
    ``PoolResult.failures`` and the pool keeps going, except for
    exceptions matching ``fatal``, which propagate as in strict mode.
    """
    if limit < 1:
        raise ValueError(f"concurrency limit must be >= 1, got {limit}")

    total = len(items)
    results: list = [None] * total
    failures: list[PoolFailure] = []
    if total == 0:
        return PoolResult(results, failures)

    next_index = 0
    done = 0

    def claim() -> int:
        nonlocal next_index
        idx = next_index
        next_index += 1
        return idx

    async def worker() -> None:
        nonlocal done
        while True:
            idx = claim()
            if idx >= total:
                return
            try:
                results[idx] = await handler(items[idx], idx)
            except Exception as exc:
                if not tolerant or isinstance(exc, fatal):
                    raise
                failures.append(PoolFailure(idx, items[idx], exc))
                logger.warning("[%s] item %r failed: %s: %s", label, items[idx], type(exc).__name__, exc)
            finally:
                done += 1
                if on_progress is not None:
                    on_progress(label, done, total)

    workers = [asyncio.create_task(worker()) for _ in range(min(limit, total))]
    try:
        await asyncio.gather(*workers)
    except BaseException:
        for task in workers:
            task.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        raise

    failures.sort(key=lambda f: f.index)
    return PoolResult(results, failures)


def checkpoint_logger(message: str, checkpoints: int = 10) -> ProgressCallback:
    """Progress observer that logs at ~``checkpoints`` evenly spaced points."""

    def _log(label: str, done: int, total: int) -> None:
        step = max(1, math.ceil(total / checkpoints))
        if done % step == 0 or done == total:
            logger.info("%s [%s]: %d/%d", message, label, done, total)

    return _log


def chain_progress(*callbacks: ProgressCallback | None) -> ProgressCallback:
    """Fan one progress event out to several observers."""
    active = [cb for cb in callbacks if cb is not None]

    def _emit(label: str, done: int, total: int) -> None:
        for cb in active:
            cb(label, done, total)

    return _emit
