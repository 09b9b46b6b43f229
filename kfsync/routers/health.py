from fastapi import APIRouter, Depends, HTTPException
from pymongo.errors import PyMongoError

from kfsync.core.deps import get_db

router = APIRouter(tags=["health"])


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/health/db")
async def health_db(db=Depends(get_db)):
    try:
        await db.command("ping")
    except PyMongoError as exc:
        raise HTTPException(status_code=503, detail=f"MongoDB unreachable: {exc}")
    return {"status": "ok", "database": "connected"}
