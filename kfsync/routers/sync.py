import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from kfsync.core.deps import get_db, get_progress, get_runner
from kfsync.schemas.sync import RunDetailResponse, RunSummaryResponse, SyncStatusResponse, TriggerResponse
from kfsync.services.progress import SyncProgress
from kfsync.services.runs import RunStore, SyncRunner

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


async def _run_in_background(runner: SyncRunner, run_id: str) -> None:
    try:
        await runner.execute(run_id)
    except Exception:
        # Already recorded on the run and in progress.last_error.
        logger.exception("Background sync run %s failed", run_id)


@router.post("/run", status_code=202, response_model=TriggerResponse, response_model_by_alias=True)
async def trigger_sync(background_tasks: BackgroundTasks, runner: SyncRunner = Depends(get_runner)):
    result = await runner.try_start("api")
    if not result.started:
        raise HTTPException(status_code=409, detail="A sync is already running")
    background_tasks.add_task(_run_in_background, runner, result.run_id)
    return TriggerResponse(started=True, reason=None, runId=result.run_id)


@router.get("/status", response_model=SyncStatusResponse, response_model_by_alias=True)
async def sync_status(progress: SyncProgress = Depends(get_progress)):
    return progress.snapshot()


@router.get("/runs", response_model=list[RunSummaryResponse], response_model_by_alias=True)
async def list_runs(limit: int = 20, db=Depends(get_db)):
    limit = max(1, min(limit, 200))
    return await RunStore(db).list_runs(limit)


@router.get("/runs/{run_id}", response_model=RunDetailResponse, response_model_by_alias=True)
async def get_run(run_id: str, db=Depends(get_db)):
    run = await RunStore(db).get_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    return run
