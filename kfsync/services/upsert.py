"""Batched, serialized bulk upserts into one MongoDB collection."""

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any

from pymongo import UpdateOne

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 250
DEFAULT_MAX_CAPTURED_UPSERTS = 2000


@dataclass
class UpsertStats:
    attempted_ops: int = 0
    affected: int = 0
    upserted: int = 0
    matched: int = 0
    modified: int = 0

    def add(self, other: "UpsertStats | None") -> "UpsertStats":
        if other is None:
            return self
        return UpsertStats(
            attempted_ops=self.attempted_ops + other.attempted_ops,
            affected=self.affected + other.affected,
            upserted=self.upserted + other.upserted,
            matched=self.matched + other.matched,
            modified=self.modified + other.modified,
        )

    def as_dict(self) -> dict[str, int]:
        return {
            "attemptedOps": self.attempted_ops,
            "affected": self.affected,
            "upserted": self.upserted,
            "matched": self.matched,
            "modified": self.modified,
        }


@dataclass
class CapturedUpserts:
    """Filters of the operations that inserted a new document, capped."""

    filters: list[dict] = field(default_factory=list)
    truncated: bool = False
    max_captured_upserts: int = DEFAULT_MAX_CAPTURED_UPSERTS

    def merge(self, other: "CapturedUpserts | None") -> "CapturedUpserts":
        if other is None:
            return self
        cap = other.max_captured_upserts or self.max_captured_upserts
        combined = self.filters + other.filters
        return CapturedUpserts(
            filters=combined[:cap],
            truncated=self.truncated or other.truncated or len(combined) > cap,
            max_captured_upserts=cap,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "filters": list(self.filters),
            "truncated": self.truncated,
            "maxCapturedUpserts": self.max_captured_upserts,
        }


class BulkUpserter:
    """Buffer UpdateOne operations and write them as unordered bulk batches.

    Batches go out one at a time, in the order they were queued; ``push``
    waits for the write when it completes a batch, so a fast producer is
    held back by the store. Store errors propagate to the caller.
    """

    def __init__(
        self,
        collection,
        batch_size: int = DEFAULT_BATCH_SIZE,
        *,
        capture_upserts: bool = False,
        max_captured_upserts: int = DEFAULT_MAX_CAPTURED_UPSERTS,
    ):
        if batch_size < 1:
            raise ValueError(f"batch_size must be >= 1, got {batch_size}")
        self.collection = collection
        self.batch_size = batch_size
        self.capture_upserts = capture_upserts
        self.max_captured_upserts = max_captured_upserts

        self._pending: list[UpdateOne] = []
        self._pending_filters: list[dict] = []
        self._write_lock = asyncio.Lock()
        self._stats = UpsertStats()
        self._upserted_filters: list[dict] = []
        self._upserted_truncated = False

    async def push(self, op: UpdateOne, op_filter: dict) -> None:
        """Queue ``op``; ``op_filter`` is its filter, kept for upsert capture."""
        self._pending.append(op)
        self._pending_filters.append(dict(op_filter))
        if len(self._pending) < self.batch_size:
            return
        await self._write(*self._take())

    async def flush(self) -> None:
        await self._write(*self._take())

    def _take(self) -> tuple[list[UpdateOne], list[dict]]:
        ops, filters = self._pending, self._pending_filters
        self._pending, self._pending_filters = [], []
        return ops, filters

    async def _write(self, ops: list[UpdateOne], filters: list[dict]) -> None:
        if not ops:
            return
        self._stats.attempted_ops += len(ops)
        async with self._write_lock:
            result = await self.collection.bulk_write(ops, ordered=False)
            self._apply_result(result)
            if self.capture_upserts:
                self._capture(filters, result)

    def _apply_result(self, result) -> None:
        upserted = result.upserted_count or 0
        matched = result.matched_count or 0
        self._stats.upserted += upserted
        self._stats.matched += matched
        self._stats.modified += result.modified_count or 0
        # matched already includes the modified documents
        self._stats.affected += upserted + matched

    def _capture(self, filters: list[dict], result) -> None:
        upserted_ids = result.upserted_ids or {}
        for idx in sorted(upserted_ids):
            if not isinstance(idx, int) or not 0 <= idx < len(filters):
                continue
            if len(self._upserted_filters) >= self.max_captured_upserts:
                self._upserted_truncated = True
                continue
            self._upserted_filters.append(filters[idx])

    def get_stats(self) -> UpsertStats:
        return UpsertStats(**asdict(self._stats))

    def get_upserted_filters(self) -> CapturedUpserts:
        return CapturedUpserts(
            filters=list(self._upserted_filters),
            truncated=self._upserted_truncated,
            max_captured_upserts=self.max_captured_upserts,
        )
