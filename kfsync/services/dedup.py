"""Duplicate cleanup and stable-id backfill for the KashFlow collections.

Pass 1 groups each collection by its KashFlow ``Id`` and deletes all but one
document per group. Pass 2 gives every remaining document without a ``uuid``
a fresh one. Run it while no sync is in progress.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from pymongo import UpdateOne

from kfsync.services.normalizer import STABLE_ID_FIELD
from kfsync.services.purchases import to_datetime

logger = logging.getLogger(__name__)

COLLECTIONS = ("customers", "suppliers", "invoices", "quotes", "purchases", "projects", "nominals")
LEGACY_KEY = "Id"
BACKFILL_BATCH_SIZE = 500

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

MISSING_STABLE_ID_FILTER = {
    "$or": [
        {STABLE_ID_FIELD: {"$exists": False}},
        {STABLE_ID_FIELD: None},
        {STABLE_ID_FIELD: ""},
    ]
}


@dataclass
class DedupAction:
    type: str
    collection: str
    entity_key: Any = None
    # deletions
    deleted_doc_id: Any = None
    had_stable_id: bool | None = None
    stable_id: str | None = None
    synced_at: Any = None
    kept_doc_id: Any = None
    kept_stable_id: str | None = None
    reason: str | None = None
    # backfills
    doc_id: Any = None
    assigned_id: str | None = None

    def as_dict(self) -> dict:
        out = {
            "type": self.type,
            "collection": self.collection,
            "entityKey": self.entity_key,
        }
        if self.type in ("deleted", "would-delete"):
            out.update(
                deletedDocId=str(self.deleted_doc_id),
                hadStableId=self.had_stable_id,
                stableId=self.stable_id,
                syncedAt=self.synced_at,
                keptDocId=str(self.kept_doc_id),
                keptStableId=self.kept_stable_id,
                reason=self.reason,
            )
        else:
            out.update(docId=str(self.doc_id), assignedId=self.assigned_id)
        return out


@dataclass
class CollectionDedupStats:
    groups: int = 0
    deleted: int = 0
    backfilled: int = 0


@dataclass
class DedupResult:
    dry_run: bool
    collections: dict[str, CollectionDedupStats] = field(default_factory=dict)
    actions: list[DedupAction] = field(default_factory=list)

    @property
    def total_groups(self) -> int:
        return sum(s.groups for s in self.collections.values())

    @property
    def total_deleted(self) -> int:
        return sum(s.deleted for s in self.collections.values())

    @property
    def total_backfilled(self) -> int:
        return sum(s.backfilled for s in self.collections.values())

    def _stats(self, name: str) -> CollectionDedupStats:
        return self.collections.setdefault(name, CollectionDedupStats())

    def as_dict(self) -> dict:
        return {
            "dryRun": self.dry_run,
            "collections": [
                {"name": name, "groups": s.groups, "deleted": s.deleted, "backfilled": s.backfilled}
                for name, s in self.collections.items()
            ],
            "totalGroups": self.total_groups,
            "totalDeleted": self.total_deleted,
            "totalBackfilled": self.total_backfilled,
            "actions": [a.as_dict() for a in self.actions],
        }


# ─── Survivor selection ───────────────────────────────────────────────────────

def has_stable_id(doc: dict) -> bool:
    return bool(doc.get(STABLE_ID_FIELD))


def _age_key(doc: dict) -> tuple[float, str]:
    synced = to_datetime(doc.get("syncedAt"))
    if synced is None:
        synced = _EPOCH
    elif synced.tzinfo is None:
        synced = synced.replace(tzinfo=timezone.utc)
    return synced.timestamp(), str(doc.get("_id"))


def select_survivor(docs: list[dict]) -> tuple[dict, list[tuple[dict, str]]]:
    """Pick the document to keep from one duplicate group.

    Returns ``(keeper, [(doc, reason), ...])``. Documents carrying a uuid
    win over those without; among candidates the oldest by
    ``(syncedAt, str(_id))`` is kept.
    """
    with_id = [d for d in docs if has_stable_id(d)]
    doomed: list[tuple[dict, str]] = []
    if with_id:
        doomed.extend((d, "missing-stable-id") for d in docs if not has_stable_id(d))
        candidates = with_id
    else:
        candidates = list(docs)

    candidates.sort(key=_age_key)
    keeper = candidates[0]
    doomed.extend((d, "newer-duplicate") for d in candidates[1:])
    return keeper, doomed


# ─── Pass 1: duplicate groups ─────────────────────────────────────────────────

def duplicate_groups_pipeline(key: str = LEGACY_KEY) -> list[dict]:
    return [
        {"$match": {key: {"$exists": True, "$ne": None}}},
        {
            "$group": {
                "_id": f"${key}",
                "count": {"$sum": 1},
                "docs": {"$push": {"_id": "$_id", STABLE_ID_FIELD: f"${STABLE_ID_FIELD}", "syncedAt": "$syncedAt"}},
            }
        },
        {"$match": {"count": {"$gt": 1}}},
    ]


async def _dedup_collection(db, name: str, dry_run: bool, result: DedupResult) -> set:
    col = db[name]
    stats = result._stats(name)
    cursor = await col.aggregate(duplicate_groups_pipeline())
    groups = await cursor.to_list(None)
    stats.groups = len(groups)

    selected: set = set()
    for group in groups:
        keeper, doomed = select_survivor(list(group["docs"]))
        ids = []
        for doc, reason in doomed:
            result.actions.append(
                DedupAction(
                    type="would-delete" if dry_run else "deleted",
                    collection=name,
                    entity_key=group["_id"],
                    deleted_doc_id=doc["_id"],
                    had_stable_id=has_stable_id(doc),
                    stable_id=doc.get(STABLE_ID_FIELD) or None,
                    synced_at=doc.get("syncedAt"),
                    kept_doc_id=keeper["_id"],
                    kept_stable_id=keeper.get(STABLE_ID_FIELD) or None,
                    reason=reason,
                )
            )
            ids.append(doc["_id"])
        selected.update(ids)

        if not ids:
            continue
        if dry_run:
            stats.deleted += len(ids)
        else:
            res = await col.delete_many({"_id": {"$in": ids}})
            stats.deleted += res.deleted_count

    if groups:
        logger.info(
            "%s: %d duplicate groups, %s %d documents",
            name, stats.groups, "would delete" if dry_run else "deleted", stats.deleted,
        )
    return selected


# ─── Pass 2: stable-id backfill ───────────────────────────────────────────────

def _entity_key(doc: dict):
    for key in ("Id", "Code", "Number"):
        if doc.get(key) is not None:
            return doc[key]
    return None


async def _backfill_collection(db, name: str, dry_run: bool, result: DedupResult, exclude: set) -> None:
    col = db[name]
    stats = result._stats(name)
    missing = await col.count_documents(MISSING_STABLE_ID_FILTER)
    if not missing:
        return
    logger.info("%s: %d documents without %s", name, missing, STABLE_ID_FIELD)

    batch: list[UpdateOne] = []
    async for doc in col.find(MISSING_STABLE_ID_FILTER, {"_id": 1, "Id": 1, "Code": 1, "Number": 1}):
        if doc["_id"] in exclude:
            continue
        if dry_run:
            result.actions.append(
                DedupAction("would-uuid-backfill", name, _entity_key(doc), doc_id=doc["_id"])
            )
            stats.backfilled += 1
            continue

        assigned = str(uuid.uuid4())
        batch.append(UpdateOne({"_id": doc["_id"]}, {"$set": {STABLE_ID_FIELD: assigned}}))
        result.actions.append(
            DedupAction("uuid-backfill", name, _entity_key(doc), doc_id=doc["_id"], assigned_id=assigned)
        )
        if len(batch) >= BACKFILL_BATCH_SIZE:
            res = await col.bulk_write(batch, ordered=False)
            stats.backfilled += res.modified_count
            batch = []

    if batch:
        res = await col.bulk_write(batch, ordered=False)
        stats.backfilled += res.modified_count


async def run_dedup(db, *, dry_run: bool = False, collections=COLLECTIONS) -> DedupResult:
    """Collapse duplicate documents per KashFlow Id, then backfill missing uuids.

    In dry-run mode nothing is written; the backfill pass skips documents
    the first pass selected for deletion so both modes report the same
    numbers.
    """
    result = DedupResult(dry_run=dry_run)
    selected: dict[str, set] = {}

    logger.info("Dedup pass 1 (duplicate groups by %s), dry_run=%s", LEGACY_KEY, dry_run)
    for name in collections:
        selected[name] = await _dedup_collection(db, name, dry_run, result)

    logger.info("Dedup pass 2 (%s backfill), dry_run=%s", STABLE_ID_FIELD, dry_run)
    for name in collections:
        exclude = selected[name] if dry_run else set()
        await _backfill_collection(db, name, dry_run, result, exclude)

    logger.info(
        "Dedup finished: groups=%d deleted=%d backfilled=%d",
        result.total_groups, result.total_deleted, result.total_backfilled,
    )
    return result
