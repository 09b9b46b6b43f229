from fastapi import APIRouter, Depends, HTTPException

from kfsync.core.deps import get_db, get_progress
from kfsync.schemas.sync import DedupResponse
from kfsync.services.dedup import run_dedup
from kfsync.services.progress import SyncProgress

router = APIRouter(prefix="/dedup", tags=["dedup"])


@router.post("", response_model=DedupResponse, response_model_by_alias=True)
async def dedup(
    dry_run: bool = True,
    db=Depends(get_db),
    progress: SyncProgress = Depends(get_progress),
):
    """Collapse duplicate KashFlow documents and backfill uuids (dry run by default)."""
    if progress.is_running and not dry_run:
        raise HTTPException(status_code=409, detail="A sync is running; retry dedup when it finishes")
    result = await run_dedup(db, dry_run=dry_run)
    return result.as_dict()
