"""In-memory progress of the current sync run.

One ``SyncProgress`` is owned by whoever triggers runs (the API app keeps
it on ``app.state``) and handed to ``reconcile``; nothing here is global.
It doubles as the pool's ``on_progress(entity, done, total)`` observer.
"""

import time
from dataclasses import dataclass, field

ENTITY_TYPES = ("customers", "suppliers", "projects", "nominals", "invoices", "quotes", "purchases")


@dataclass
class ItemProgress:
    done: int = 0
    total: int = 0


def _default_items() -> dict[str, ItemProgress]:
    return {name: ItemProgress() for name in ENTITY_TYPES}


@dataclass
class SyncProgress:
    is_running: bool = False
    started_at: float | None = None
    stage: str = "idle"
    items: dict[str, ItemProgress] = field(default_factory=_default_items)
    counts: dict[str, int] | None = None
    last_error: str | None = None
    last_run: float | None = None

    def start(self) -> None:
        self.is_running = True
        self.started_at = time.time()
        self.stage = "starting"
        self.items = _default_items()
        self.counts = None
        self.last_error = None

    def set_stage(self, stage: str) -> None:
        self.stage = stage

    def _item(self, name: str) -> ItemProgress:
        return self.items.setdefault(name, ItemProgress())

    def set_item_total(self, name: str, total: int) -> None:
        self._item(name).total = int(total or 0)

    def set_item_done(self, name: str, done: int) -> None:
        item = self._item(name)
        item.done = min(int(done or 0), item.total) if item.total else int(done or 0)

    def inc_item(self, name: str, delta: int = 1) -> None:
        self._item(name).done += delta

    def __call__(self, name: str, done: int, total: int) -> None:
        item = self._item(name)
        item.total = total
        item.done = done

    def finish(self, counts: dict[str, int] | None) -> None:
        self.is_running = False
        self.stage = "finished"
        self.counts = counts
        self.last_run = time.time()

    def fail(self, message: str | None) -> None:
        self.is_running = False
        self.stage = "failed"
        self.last_error = message or "Sync failed"

    def snapshot(self) -> dict:
        return {
            "isRunning": self.is_running,
            "startedAt": self.started_at,
            "stage": self.stage,
            "items": {k: {"done": v.done, "total": v.total} for k, v in self.items.items()},
            "counts": self.counts,
            "lastError": self.last_error,
            "lastRun": self.last_run,
        }
