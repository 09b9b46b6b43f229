"""KashFlow → MongoDB reconciliation run.

Stages, in order:

    kashflow:auth           build the authenticated client (fatal on failure)
    kashflow:metadata       connectivity check; 404 falls back to
    kashflow:sample           a one-record customers list (fatal on failure)
    mongo:connect           ensure indexes (skipped in fetch-only mode)
    fetch:lists             customers, suppliers, projects, nominals in parallel
    upsert:lists            list-shaped payloads, one bulk writer per entity
    customers:details       ┐
    suppliers:details       ├ detail endpoints expose fields the lists omit
    projects:details        ┘
    invoices:per-customer   ┐ invoices/quotes are only listable per customer and
    invoices:details        │ purchases per supplier, and only in summary shape,
    quotes:per-customer     │ so each number discovered there gets a second
    quotes:details          │ detail fetch
    purchases:per-supplier  │
    purchases:details       ┘
    finalising

Every detail fan-out runs in the tolerant pool: a failed fetch is logged and
counted and the document keeps its list-phase data. Store errors propagate.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from pymongo.errors import PyMongoError

from kfsync.core.config import Settings, settings as default_settings
from kfsync.core.mongo import ensure_kashflow_indexes
from kfsync.kashflow.errors import KashFlowApiError
from kfsync.services.normalizer import (
    DEFAULT_POLICY,
    SUPPLIER_POLICY,
    FieldPolicy,
    build_upsert_op,
    is_missing_key,
    pick_code,
    pick_number,
    resolve_identity,
)
from kfsync.services.pool import chain_progress, checkpoint_logger, run_pool
from kfsync.services.progress import SyncProgress
from kfsync.services.purchases import prepare_purchase_for_upsert
from kfsync.services.upsert import BulkUpserter, CapturedUpserts, UpsertStats

logger = logging.getLogger(__name__)

LIST_PAGE_SIZE = 200

RecordLog = Callable[[str, str, str, dict | None], Awaitable[Any]]


@dataclass(frozen=True)
class EntitySpec:
    name: str
    fallback: str | None = None
    policy: FieldPolicy = DEFAULT_POLICY
    prepare_detail: Callable[[dict], dict] | None = None


CUSTOMERS = EntitySpec("customers")
SUPPLIERS = EntitySpec("suppliers", policy=SUPPLIER_POLICY)
PROJECTS = EntitySpec("projects", fallback="Number")
NOMINALS = EntitySpec("nominals", fallback="Code")
INVOICES = EntitySpec("invoices")
QUOTES = EntitySpec("quotes")
PURCHASES = EntitySpec("purchases", prepare_detail=prepare_purchase_for_upsert)

ENTITY_SPECS: dict[str, EntitySpec] = {
    s.name: s for s in (CUSTOMERS, SUPPLIERS, PROJECTS, NOMINALS, INVOICES, QUOTES, PURCHASES)
}


@dataclass(frozen=True)
class DetailEntry:
    """One detail fetch: the key the endpoint wants and the identity from the list phase."""

    fetch_key: Any
    identity: tuple[str, Any] | None


@dataclass
class ReconcileResult:
    counts: dict[str, int]
    mongo: dict[str, UpsertStats] | None
    mongo_upserts: dict[str, CapturedUpserts] | None
    detail_failures: dict[str, int] = field(default_factory=dict)
    list_failures: dict[str, int] = field(default_factory=dict)
    skipped_missing_key: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {
            "counts": dict(self.counts),
            "mongo": {k: v.as_dict() for k, v in self.mongo.items()} if self.mongo is not None else None,
            "mongoUpserts": (
                {k: v.as_dict() for k, v in self.mongo_upserts.items()}
                if self.mongo_upserts is not None else None
            ),
            "detailFailures": dict(self.detail_failures),
            "listFailures": dict(self.list_failures),
            "skippedMissingKey": dict(self.skipped_missing_key),
        }


class Reconciler:
    """One reconciliation run. Create a fresh instance per run."""

    def __init__(
        self,
        client_factory: Callable[[], Awaitable[Any]],
        db,
        *,
        run_id: str | None = None,
        progress: SyncProgress | None = None,
        record_log: RecordLog | None = None,
        settings: Settings | None = None,
        ensure_indexes: bool = True,
    ):
        self.client_factory = client_factory
        self.db = db
        self.run_id = run_id
        self.progress = progress if progress is not None else SyncProgress()
        self.record_log = record_log
        self.settings = settings or default_settings
        self.ensure_indexes = ensure_indexes

        self.stage = "initialising"
        self._started = time.monotonic()
        self.synced_at: datetime | None = None
        self.mongo_summary: dict[str, UpsertStats] = {}
        self.mongo_details: dict[str, CapturedUpserts] = {}
        self.detail_failures: dict[str, int] = {}
        self.list_failures: dict[str, int] = {}
        self.skipped_missing_key: dict[str, int] = {}

    # ─── Logging / stage helpers ─────────────────────────────────────────────

    async def _emit(self, level: str, message: str, meta: dict | None = None) -> None:
        if self.record_log is None:
            return
        try:
            await self.record_log(level, message, self.stage, meta)
        except Exception as exc:
            logger.warning("Could not record run log %r: %s", message, exc)

    async def _set_stage(self, stage: str) -> None:
        self.stage = stage
        self.progress.set_stage(stage)
        logger.info("Sync stage: %s", stage)
        await self._emit("info", "Stage changed", {"stage": stage})

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.settings.heartbeat_seconds)
            logger.info(
                "Sync heartbeat: stage=%s uptime=%.1fs", self.stage, time.monotonic() - self._started
            )

    def _skip(self, entity: str, n: int = 1) -> None:
        self.skipped_missing_key[entity] = self.skipped_missing_key.get(entity, 0) + n

    async def _warn_skipped(self, entity: str, before: int) -> None:
        skipped = self.skipped_missing_key.get(entity, 0) - before
        if skipped > 0:
            logger.warning("Skipped %d %s records with a missing identity key", skipped, entity)
            await self._emit("warn", f"Skipped {entity} upserts with missing identity", {"count": skipped})

    # ─── Writers ─────────────────────────────────────────────────────────────

    def _writer(self, entity: str) -> BulkUpserter | None:
        if self.db is None:
            return None
        return BulkUpserter(
            self.db[entity],
            self.settings.upsert_batch_size,
            capture_upserts=True,
            max_captured_upserts=self.settings.max_captured_upserts,
        )

    async def _finish_writer(self, entity: str, writer: BulkUpserter | None, phase: str) -> None:
        if writer is None:
            return
        await writer.flush()
        stats = writer.get_stats()
        self.mongo_summary[entity] = self.mongo_summary.get(entity, UpsertStats()).add(stats)
        captured = writer.get_upserted_filters()
        previous = self.mongo_details.get(entity)
        self.mongo_details[entity] = previous.merge(captured) if previous else captured
        logger.info("Mongo upsert summary (%s %s): %s", entity, phase, stats.as_dict())
        await self._emit("info", f"Mongo upsert summary ({entity} {phase})", {"stats": stats.as_dict()})

    async def _push(self, spec: EntitySpec, writer: BulkUpserter | None, identity, record: dict) -> None:
        if writer is None:
            return
        key_field, key_value = identity
        await writer.push(
            build_upsert_op(key_field, key_value, record, self.synced_at, self.run_id, spec.policy),
            {key_field: key_value},
        )

    def _observer(self, message: str, checkpoints: int = 10):
        return chain_progress(self.progress, checkpoint_logger(message, checkpoints))

    # ─── Phases ──────────────────────────────────────────────────────────────

    async def _connect(self, client) -> None:
        await self._set_stage("kashflow:metadata")
        try:
            meta = await client.metadata.get()
            logger.info("KashFlow connectivity check ok (metadata: %s)", bool(meta))
            await self._emit("info", "KashFlow connectivity check ok", {"method": "metadata"})
        except KashFlowApiError as exc:
            if not exc.is_not_found:
                logger.error("KashFlow connectivity check failed: status=%s %s", exc.status, exc)
                await self._emit("error", "KashFlow connectivity check failed", {"status": exc.status})
                raise
            # Some tenants don't expose /metadata; a small list proves access too.
            await self._set_stage("kashflow:sample")
            try:
                sample = await client.customers.list({"perpage": 1})
            except Exception as sample_exc:
                logger.error("KashFlow connectivity sample failed: %s", sample_exc)
                await self._emit("error", "KashFlow connectivity sample failed", {"message": str(sample_exc)})
                raise
            logger.info("KashFlow connectivity check ok (sample fallback, %d sample)", len(sample or []))
            await self._emit("info", "KashFlow connectivity check ok", {"method": "sample"})

    async def _upsert_list(self, spec: EntitySpec, records: list[dict]) -> None:
        writer = self._writer(spec.name)
        before = self.skipped_missing_key.get(spec.name, 0)
        for record in records:
            identity = resolve_identity(record, spec.fallback)
            if identity is None:
                self._skip(spec.name)
                continue
            await self._push(spec, writer, identity, record)
        await self._finish_writer(spec.name, writer, "list")
        await self._warn_skipped(spec.name, before)

    async def _detail_pass(
        self,
        spec: EntitySpec,
        entries: list[DetailEntry],
        fetch: Callable[[Any], Awaitable[dict]],
        concurrency: int,
    ) -> None:
        await self._set_stage(f"{spec.name}:details")
        self.progress.set_item_total(spec.name, len(entries))
        self.progress.set_item_done(spec.name, 0)
        logger.info("Starting %s detail fanout: %d items, concurrency %d", spec.name, len(entries), concurrency)
        writer = self._writer(spec.name)
        before = self.skipped_missing_key.get(spec.name, 0)

        async def handle(entry: DetailEntry, _idx: int) -> bool:
            full = await fetch(entry.fetch_key)
            if not isinstance(full, dict):
                self._skip(spec.name)
                return False
            if spec.prepare_detail is not None:
                full = spec.prepare_detail(full)
            identity = entry.identity or resolve_identity(full, spec.fallback)
            if identity is None:
                self._skip(spec.name)
                return False
            await self._push(spec, writer, identity, full)
            return True

        outcome = await run_pool(
            entries,
            concurrency,
            handle,
            label=spec.name,
            on_progress=self._observer(f"{spec.name} detail progress"),
            tolerant=True,
            fatal=(PyMongoError,),
        )
        await self._finish_writer(spec.name, writer, "details")
        await self._warn_skipped(spec.name, before)
        if outcome.failed:
            self.detail_failures[spec.name] = self.detail_failures.get(spec.name, 0) + outcome.failed
            logger.warning(
                "%d %s detail fetches failed; those documents keep their list data", outcome.failed, spec.name
            )
            await self._emit("warn", f"Some {spec.name} detail fetches failed", {"failed": outcome.failed})

    async def _per_parent_pass(
        self,
        spec: EntitySpec,
        parent_label: str,
        parent_codes: list,
        list_for_parent: Callable[[Any], Awaitable[list[dict]]],
    ) -> tuple[int, list[DetailEntry]]:
        await self._set_stage(f"{spec.name}:per-{parent_label}")
        self.progress.set_item_total(spec.name, len(parent_codes))
        self.progress.set_item_done(spec.name, 0)
        logger.info(
            "Starting per-%s %s list fetch: %d parents, concurrency %d",
            parent_label, spec.name, len(parent_codes), self.settings.concurrency,
        )
        writer = self._writer(spec.name)
        entries: list[DetailEntry] = []
        before = self.skipped_missing_key.get(spec.name, 0)

        async def handle(code, _idx: int) -> int:
            items = await list_for_parent(code) or []
            for item in items:
                identity = resolve_identity(item, spec.fallback)
                if identity is None:
                    self._skip(spec.name)
                    continue
                number = pick_number(item)
                if not is_missing_key(number):
                    entries.append(DetailEntry(number, identity))
                await self._push(spec, writer, identity, item)
            return len(items)

        outcome = await run_pool(
            parent_codes,
            self.settings.concurrency,
            handle,
            label=spec.name,
            on_progress=self._observer(f"Per-{parent_label} {spec.name} list progress"),
            tolerant=True,
            fatal=(PyMongoError,),
        )
        await self._finish_writer(spec.name, writer, "list")
        await self._warn_skipped(spec.name, before)
        if outcome.failed:
            self.list_failures[spec.name] = self.list_failures.get(spec.name, 0) + outcome.failed
            logger.warning("%d per-%s %s list fetches failed", outcome.failed, parent_label, spec.name)
            await self._emit("warn", f"Some per-{parent_label} {spec.name} lists failed", {"failed": outcome.failed})
        total = sum(n for n in outcome.results if n)
        return total, entries

    async def _transactional(
        self,
        spec: EntitySpec,
        parent_label: str,
        parent_codes: list,
        resource,
        parent_param: str,
    ) -> int:
        async def list_for_parent(code):
            return await resource.list_all({"perpage": LIST_PAGE_SIZE, parent_param: code})

        total, entries = await self._per_parent_pass(spec, parent_label, parent_codes, list_for_parent)
        if self.db is not None and entries:
            await self._detail_pass(spec, entries, resource.get, self.settings.detail_concurrency)
        logger.info("Fetched %d %s (per %s)", total, spec.name, parent_label)
        return total

    # ─── Entry point ─────────────────────────────────────────────────────────

    async def run(self) -> ReconcileResult:
        self._started = time.monotonic()
        heartbeat = asyncio.create_task(self._heartbeat())
        client = None
        try:
            await self._set_stage("kashflow:auth")
            client = await self.client_factory()
            logger.info("Starting KashFlow sync (run_id=%s)", self.run_id)
            await self._emit("info", "Starting KashFlow sync")

            await self._connect(client)

            if self.db is not None:
                await self._set_stage("mongo:connect")
                if self.ensure_indexes:
                    await ensure_kashflow_indexes(self.db)
                await self._emit("info", "Mongo connected")
            else:
                logger.warning("MongoDB not configured; running in fetch-only mode (no upserts)")
                await self._emit("warn", "Mongo not configured; running in fetch-only mode")

            await self._set_stage("fetch:lists")
            customers, suppliers, projects, nominals = await asyncio.gather(
                client.customers.list_all({"perpage": LIST_PAGE_SIZE}),
                client.suppliers.list_all({"perpage": LIST_PAGE_SIZE}),
                client.projects.list_all({"perpage": LIST_PAGE_SIZE}),
                client.nominals.list(),
            )
            customers, suppliers = customers or [], suppliers or []
            projects, nominals = projects or [], nominals or []
            fetched = {
                "customers": len(customers),
                "suppliers": len(suppliers),
                "projects": len(projects),
                "nominals": len(nominals),
            }
            logger.info("Fetched KashFlow lists: %s", fetched)
            await self._emit("info", "Fetched KashFlow lists", fetched)

            self.synced_at = datetime.now(timezone.utc)
            if self.db is not None:
                await self._set_stage("upsert:lists")
                for spec, records in (
                    (CUSTOMERS, customers),
                    (SUPPLIERS, suppliers),
                    (PROJECTS, projects),
                    (NOMINALS, nominals),
                ):
                    await self._upsert_list(spec, records)

            customer_codes = [c for c in map(pick_code, customers) if not is_missing_key(c)]
            supplier_codes = [c for c in map(pick_code, suppliers) if not is_missing_key(c)]

            for spec, records, resource, codes in (
                (CUSTOMERS, customers, client.customers, customer_codes),
                (SUPPLIERS, suppliers, client.suppliers, supplier_codes),
            ):
                if self.db is not None and codes:
                    entries = [
                        DetailEntry(code, resolve_identity(r, spec.fallback))
                        for r in records
                        if not is_missing_key(code := pick_code(r))
                    ]
                    await self._detail_pass(spec, entries, resource.get, self.settings.concurrency)
                else:
                    self.progress.set_item_total(spec.name, len(codes))
                    self.progress.set_item_done(spec.name, len(codes))

            project_entries = [
                DetailEntry(number, resolve_identity(p, PROJECTS.fallback))
                for p in projects
                if not is_missing_key(number := pick_number(p))
            ]
            if self.db is not None and project_entries:
                await self._detail_pass(
                    PROJECTS, project_entries, client.projects.get, self.settings.detail_concurrency
                )
            else:
                self.progress.set_item_total("projects", len(projects))
                self.progress.set_item_done("projects", len(projects))
            self.progress.set_item_total("nominals", len(nominals))
            self.progress.set_item_done("nominals", len(nominals))

            invoices_total = await self._transactional(
                INVOICES, "customer", customer_codes, client.invoices, "customerCode"
            )
            quotes_total = await self._transactional(
                QUOTES, "customer", customer_codes, client.quotes, "customerCode"
            )
            purchases_total = await self._transactional(
                PURCHASES, "supplier", supplier_codes, client.purchases, "supplierCode"
            )

            await self._set_stage("finalising")
            counts = {
                **fetched,
                "invoices": invoices_total,
                "quotes": quotes_total,
                "purchases": purchases_total,
            }
            duration = time.monotonic() - self._started
            logger.info("KashFlow sync finished in %.1fs: %s", duration, counts)
            await self._emit("success", "Sync finished", {"counts": counts, "durationSeconds": round(duration, 1)})

            return ReconcileResult(
                counts=counts,
                mongo=self.mongo_summary if self.db is not None else None,
                mongo_upserts=self.mongo_details if self.db is not None else None,
                detail_failures=dict(self.detail_failures),
                list_failures=dict(self.list_failures),
                skipped_missing_key=dict(self.skipped_missing_key),
            )
        except Exception as exc:
            await self._emit("error", "Sync runner failed", {"message": str(exc)})
            raise
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            if client is not None:
                await client.aclose()


async def reconcile(
    client_factory: Callable[[], Awaitable[Any]],
    db,
    *,
    run_id: str | None = None,
    progress: SyncProgress | None = None,
    record_log: RecordLog | None = None,
    settings: Settings | None = None,
    ensure_indexes: bool = True,
) -> ReconcileResult:
    """Run one full KashFlow → MongoDB reconciliation. ``db=None`` fetches only."""
    reconciler = Reconciler(
        client_factory,
        db,
        run_id=run_id,
        progress=progress,
        record_log=record_log,
        settings=settings,
        ensure_indexes=ensure_indexes,
    )
    return await reconciler.run()
