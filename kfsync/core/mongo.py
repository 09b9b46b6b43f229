import logging
import re
from urllib.parse import urlsplit, urlunsplit

from pymongo import ASCENDING, DESCENDING, AsyncMongoClient
from pymongo.asynchronous.database import AsyncDatabase
from pymongo.errors import OperationFailure
from pymongo.server_api import ServerApi

from kfsync.core.config import Settings, settings

logger = logging.getLogger(__name__)

# Shared async client (created lazily, reused across requests and runs)
_client: AsyncMongoClient | None = None


class MongoNotConfiguredError(RuntimeError):
    pass


# entity collection → secondary (non-unique) lookup field
ENTITY_INDEXES: dict[str, str] = {
    "customers": "Code",
    "suppliers": "Code",
    "nominals": "Code",
    "invoices": "Number",
    "quotes": "Number",
    "purchases": "Number",
    "projects": "Number",
    "notes": "Number",
}


def redact_mongo_uri(uri: str) -> str:
    """Hide credentials in a MongoDB URI before logging it."""
    if not uri:
        return ""
    try:
        parts = urlsplit(uri)
        if "@" not in parts.netloc:
            return uri
        hosts = parts.netloc.rsplit("@", 1)[1]
        return urlunsplit(parts._replace(netloc=f"***:***@{hosts}"))
    except ValueError:
        return re.sub(r"//[^@/]+@", "//***:***@", uri)


def get_mongo_client(s: Settings = settings) -> AsyncMongoClient:
    global _client
    if _client is None:
        uri = s.resolved_mongo_uri()
        if not uri:
            raise MongoNotConfiguredError("MongoDB not configured: set MONGO_URI or MONGO_HOST")
        _client = AsyncMongoClient(
            uri,
            maxPoolSize=10,
            serverSelectionTimeoutMS=10_000,
            server_api=ServerApi("1"),
            tz_aware=True,
        )
        logger.info("MongoDB configured: db=%s uri=%s", s.mongo_db_name, redact_mongo_uri(uri))
    return _client


def get_database(s: Settings = settings) -> AsyncDatabase:
    return get_mongo_client(s)[s.mongo_db_name]


async def close_mongo_client() -> None:
    global _client
    if _client is not None:
        try:
            await _client.close()
        finally:
            _client = None


async def _create_index(col, keys, **kwargs) -> None:
    try:
        await col.create_index(keys, **kwargs)
    except OperationFailure as exc:
        # Existing duplicates block unique indexes until the dedup job has run.
        logger.warning(
            "Could not create index %s on %s (code=%s): %s",
            kwargs.get("name"), col.name, exc.code, exc,
        )


async def ensure_kashflow_indexes(db) -> None:
    """Create the identity indexes each entity collection relies on.

    ``Id`` is unique but partial because legacy documents may lack it;
    ``uuid`` is unique and sparse for the same reason.
    """
    for name, lookup_field in ENTITY_INDEXES.items():
        col = db[name]
        await _create_index(
            col,
            [("Id", ASCENDING)],
            unique=True,
            partialFilterExpression={"Id": {"$exists": True}},
            name="Id_unique_partial",
        )
        await _create_index(col, [(lookup_field, ASCENDING)], name=f"{lookup_field}_lookup")
        await _create_index(col, [("uuid", ASCENDING)], unique=True, sparse=True, name="uuid_unique_sparse")

    runs = db["runs"]
    await _create_index(runs, [("id", ASCENDING)], unique=True, name="id_unique")
    await _create_index(runs, [("status", ASCENDING), ("startedAt", DESCENDING)], name="status_startedAt")
    logger.debug("KashFlow indexes ensured")
