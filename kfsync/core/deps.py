from fastapi import HTTPException, Request

from kfsync.core.mongo import MongoNotConfiguredError, get_database
from kfsync.services.progress import SyncProgress
from kfsync.services.runs import SyncRunner


async def get_db():
    try:
        return get_database()
    except MongoNotConfiguredError as exc:
        raise HTTPException(status_code=503, detail=str(exc))


def get_progress(request: Request) -> SyncProgress:
    return request.app.state.progress


def get_runner(request: Request) -> SyncRunner:
    return request.app.state.runner
