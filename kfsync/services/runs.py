"""Sync run records, the single-run guard, and the scheduled Celery task."""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import redis.asyncio as aioredis
from pymongo import DESCENDING

from kfsync.core.config import Settings, settings as default_settings
from kfsync.core.mongo import close_mongo_client, get_database
from kfsync.core.redis import SyncLock
from kfsync.kashflow.client import KashFlowClient
from kfsync.kashflow.errors import KashFlowApiError
from kfsync.services.progress import SyncProgress
from kfsync.services.reconcile import ReconcileResult, reconcile
from kfsync.worker import celery_app

logger = logging.getLogger(__name__)

RUNS_COLLECTION = "runs"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def describe_sync_error(exc: BaseException) -> str:
    """Human-readable reason for a failed sync, with a fix where we know one."""
    if isinstance(exc, KashFlowApiError):
        if exc.error_code == "PasswordExpired":
            return (
                "KashFlow rejected the login because the account password has expired. "
                "Log in to KashFlow and set a new password, then update KASHFLOW_PASSWORD "
                "(or set KASHFLOW_SESSION_TOKEN to a fresh session token) and retry."
            )
        if exc.api_message:
            return exc.api_message
    return str(exc) or type(exc).__name__


# ─── Run store ────────────────────────────────────────────────────────────────

class RunStore:
    """Audit trail of sync runs in the ``runs`` collection."""

    def __init__(self, db, max_log_entries: int = default_settings.run_log_max_entries):
        self.col = db[RUNS_COLLECTION]
        self.max_log_entries = max_log_entries

    async def begin_run(self, metadata: dict | None = None, run_id: str | None = None) -> str:
        run_id = run_id or str(uuid.uuid4())
        await self.col.insert_one({
            "id": run_id,
            "status": "running",
            "startedAt": _now(),
            "finishedAt": None,
            "logs": [],
            **(metadata or {}),
        })
        return run_id

    async def record_log(
        self, run_id: str, level: str, message: str, stage: str | None = None, meta: dict | None = None
    ) -> None:
        entry = {"ts": _now(), "level": level, "message": message, "stage": stage}
        if meta:
            entry["meta"] = meta
        await self.col.update_one(
            {"id": run_id},
            {"$push": {"logs": {"$each": [entry], "$slice": -self.max_log_entries}}},
        )

    async def finish_run(self, run_id: str, summary: dict) -> None:
        status = "failed" if summary.get("error") else "success"
        await self.col.update_one(
            {"id": run_id},
            {"$set": {"status": status, "finishedAt": _now(), **summary}},
        )

    async def list_runs(self, limit: int = 20) -> list[dict]:
        cursor = self.col.find({}, {"_id": 0, "logs": 0}).sort("startedAt", DESCENDING).limit(limit)
        return await cursor.to_list(None)

    async def get_run(self, run_id: str) -> dict | None:
        return await self.col.find_one({"id": run_id}, {"_id": 0})


# ─── Runner ───────────────────────────────────────────────────────────────────

@dataclass
class TriggerResult:
    started: bool
    reason: str | None = None
    run_id: str | None = None


class SyncRunner:
    """Start sync runs one at a time.

    ``progress`` guards this process; ``lock`` (Redis) guards against the
    API and the Celery worker syncing at the same time.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        db=None,
        progress: SyncProgress | None = None,
        lock: SyncLock | None = None,
        client_factory: Callable[[], Awaitable[Any]] | None = None,
    ):
        self.settings = settings or default_settings
        self.db = db
        self.progress = progress if progress is not None else SyncProgress()
        self.lock = lock
        self.client_factory = client_factory or (lambda: KashFlowClient.create(self.settings))
        self.runs = RunStore(db, self.settings.run_log_max_entries) if db is not None else None

    async def try_start(self, requested_by: str = "api") -> TriggerResult:
        """Claim the run slot and record the run; the sync itself runs in ``execute``."""
        if self.progress.is_running:
            return TriggerResult(False, "already-running")

        run_id = str(uuid.uuid4())
        if self.lock is not None and not await self.lock.acquire(run_id):
            logger.info("Sync not started: lock held by another process")
            return TriggerResult(False, "already-running")

        self.progress.start()
        try:
            if self.runs is not None:
                await self.runs.begin_run({"requestedBy": requested_by}, run_id=run_id)
        except Exception:
            self.progress.fail("Could not record sync run")
            await self._release(run_id)
            raise
        logger.info("Sync run %s started (requested by %s)", run_id, requested_by)
        return TriggerResult(True, None, run_id)

    async def execute(self, run_id: str) -> ReconcileResult:
        async def record_log(level, message, stage, meta):
            if self.runs is not None:
                await self.runs.record_log(run_id, level, message, stage, meta)

        try:
            result = await reconcile(
                self.client_factory,
                self.db,
                run_id=run_id,
                progress=self.progress,
                record_log=record_log,
                settings=self.settings,
            )
        except Exception as exc:
            message = describe_sync_error(exc)
            logger.error("Sync run %s failed: %s", run_id, message)
            self.progress.fail(message)
            if self.runs is not None:
                await self.runs.finish_run(run_id, {"error": message})
            raise
        finally:
            await self._release(run_id)

        self.progress.finish(result.counts)
        if self.runs is not None:
            await self.runs.finish_run(run_id, {"summary": result.as_dict()})
        logger.info("Sync run %s succeeded", run_id)
        return result

    async def trigger(self, requested_by: str = "api") -> TriggerResult:
        """Start a run and wait for it to finish."""
        started = await self.try_start(requested_by)
        if started.started:
            await self.execute(started.run_id)
        return started

    async def _release(self, run_id: str) -> None:
        if self.lock is None:
            return
        try:
            await self.lock.release(run_id)
        except aioredis.RedisError as exc:
            # The lock expires on its own after SYNC_LOCK_TTL_SECONDS.
            logger.warning("Could not release sync lock for run %s: %s", run_id, exc)


# ─── Scheduled task ───────────────────────────────────────────────────────────

async def _scheduled_sync() -> dict:
    db = get_database() if default_settings.mongo_enabled else None
    redis_client = aioredis.from_url(default_settings.redis_url, decode_responses=True)
    try:
        runner = SyncRunner(default_settings, db, SyncProgress(), SyncLock(redis_client))
        result = await runner.trigger("cron")
        return {"started": result.started, "reason": result.reason, "runId": result.run_id}
    finally:
        await redis_client.aclose()
        await close_mongo_client()


@celery_app.task(name="kfsync.services.runs.run_scheduled_sync")
def run_scheduled_sync():
    """Cron-triggered KashFlow sync; skipped when another run holds the lock."""
    logger.info("Starting scheduled KashFlow sync")
    outcome = asyncio.run(_scheduled_sync())
    if not outcome["started"]:
        logger.info("Scheduled sync skipped: %s", outcome["reason"])
    return outcome
