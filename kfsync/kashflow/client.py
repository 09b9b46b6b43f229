"""Async KashFlow REST v2 client.

Features:
- One httpx.AsyncClient per KashFlowClient (connection pooling)
- Bearer session token acquired up front via kashflow.auth
- Retry with exponential backoff on 429/5xx and network errors, honours Retry-After
- Transparent pagination (list_all) across both list-envelope shapes

Example usage:

    client = await KashFlowClient.create(settings)
    async with client:
        customers = await client.customers.list_all({"perpage": 200})
"""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any
from urllib.parse import quote

import httpx

from kfsync.core.config import Settings
from kfsync.kashflow.auth import get_session_token
from kfsync.kashflow.errors import KashFlowApiError

logger = logging.getLogger(__name__)

RETRY_STATUS_CODES = {429, 502, 503, 504}
MAX_BACKOFF_SECONDS = 30.0
DEFAULT_MAX_PAGES = 10_000


def unwrap_page(body: Any) -> tuple[list[dict], str | None]:
    """Return (records, next_page_url) for one list response.

    KashFlow answers list endpoints either with a bare array or with
    ``{"Data": [...], "MetaData": {"NextPageUrl": ...}}``.
    """
    if isinstance(body, list):
        return body, None
    if not isinstance(body, dict):
        return [], None

    records = body.get("Data")
    if records is None:
        records = body.get("data")
    if not isinstance(records, list):
        records = []

    meta = body.get("MetaData") or body.get("metaData") or body.get("metadata")
    if not isinstance(meta, dict):
        return records, None
    return records, meta.get("NextPageUrl") or meta.get("nextPageUrl") or None


def alternate_path(path: str) -> str:
    """Fallback spelling for a list path that 404s (case or trailing slash)."""
    if path != path.lower():
        return path.lower()
    if path.endswith("/"):
        return path.rstrip("/")
    return path + "/"


class _Resource:
    """One KashFlow collection endpoint, e.g. /customers."""

    def __init__(self, client: "KashFlowClient", path: str, encode_key: bool = False):
        self._client = client
        self.path = path
        self._encode_key = encode_key

    def _item_path(self, key) -> str:
        key = quote(str(key), safe="") if self._encode_key else key
        return f"{self.path}/{key}"

    async def list(self, params: dict | None = None) -> list[dict]:
        return await self._client.list(self.path, params)

    async def list_all(self, params: dict | None = None) -> list[dict]:
        return await self._client.list_all(self.path, params)

    async def get(self, key) -> dict:
        return await self._client.get(self._item_path(key))

    async def create(self, body: dict) -> dict:
        return await self._client.request_json("POST", self.path, json=body)

    async def update(self, key, body: dict) -> dict:
        return await self._client.request_json("PUT", self._item_path(key), json=body)


class _Metadata:
    def __init__(self, client: "KashFlowClient"):
        self._client = client

    async def get(self) -> Any:
        return await self._client.get("/metadata")


class KashFlowClient:
    """Authenticated KashFlow API client.

    Use ``await KashFlowClient.create(settings)`` to run the session-token
    flow; the constructor accepts a ready ``httpx.AsyncClient`` (tests pass
    one backed by ``httpx.MockTransport``).
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        max_retries: int = 3,
        retry_backoff: float = 1.0,
        max_pages: int = DEFAULT_MAX_PAGES,
    ):
        self._http = http
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.max_pages = max_pages

        self.customers = _Resource(self, "/customers", encode_key=True)
        self.suppliers = _Resource(self, "/suppliers", encode_key=True)
        self.invoices = _Resource(self, "/invoices")
        self.quotes = _Resource(self, "/quotes")
        self.purchases = _Resource(self, "/purchases")
        self.projects = _Resource(self, "/projects")
        self.nominals = _Resource(self, "/nominals", encode_key=True)
        self.metadata = _Metadata(self)

    @classmethod
    async def create(
        cls,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
        **kwargs,
    ) -> "KashFlowClient":
        http = httpx.AsyncClient(
            base_url=settings.kashflow_base_url,
            timeout=settings.http_timeout_seconds,
            transport=transport,
        )
        try:
            token = await get_session_token(settings, http)
        except BaseException:
            await http.aclose()
            raise
        http.headers["Authorization"] = f"Bearer {token}"
        return cls(http, max_retries=settings.http_max_retries, **kwargs)

    async def __aenter__(self) -> "KashFlowClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ─── Core request with retry ─────────────────────────────────────────────

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        backoff = self.retry_backoff
        attempt = 0
        while True:
            try:
                response = await self._http.request(method, url, **kwargs)
            except (httpx.TimeoutException, httpx.TransportError) as exc:
                if attempt < self.max_retries:
                    logger.warning(
                        "[Retry %d/%d] %s %s network error: %s",
                        attempt + 1, self.max_retries, method, url, type(exc).__name__,
                    )
                    await asyncio.sleep(backoff + random.uniform(0, backoff))
                    backoff = min(backoff * 2, MAX_BACKOFF_SECONDS)
                    attempt += 1
                    continue
                raise

            if response.status_code in RETRY_STATUS_CODES and attempt < self.max_retries:
                wait = backoff
                retry_after = response.headers.get("retry-after")
                if response.status_code == 429 and retry_after:
                    try:
                        wait = float(retry_after)
                    except ValueError:
                        wait = backoff
                logger.warning(
                    "[Retry %d/%d] %s %s returned %d",
                    attempt + 1, self.max_retries, method, url, response.status_code,
                )
                await asyncio.sleep(wait + random.uniform(0, backoff))
                backoff = min(backoff * 2, MAX_BACKOFF_SECONDS)
                attempt += 1
                continue

            if response.is_error:
                err = KashFlowApiError.from_response(response)
                logger.error("KashFlow API error: status=%s error=%s", err.status, err.error_code)
                raise err
            return response

    async def request_json(self, method: str, url: str, **kwargs) -> Any:
        response = await self.request(method, url, **kwargs)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    async def get(self, url: str, params: dict | None = None) -> Any:
        return await self.request_json("GET", url, params=params)

    # ─── Lists ───────────────────────────────────────────────────────────────

    async def _get_with_fallback(self, path: str, params: dict | None) -> Any:
        try:
            return await self.get(path, params)
        except KashFlowApiError as exc:
            if not exc.is_not_found:
                raise
            fallback = alternate_path(path)
            logger.info("%s returned 404, retrying as %s", path, fallback)
            return await self.get(fallback, params)

    async def list(self, path: str, params: dict | None = None) -> list[dict]:
        """Fetch a single page and return its records."""
        body = await self._get_with_fallback(path, params)
        records, _ = unwrap_page(body)
        return records

    async def list_all(self, path: str, params: dict | None = None) -> list[dict]:
        """Follow NextPageUrl until exhausted and return every record.

        Pages are fetched strictly one after another; the next URL only
        exists once the previous page has arrived.
        """
        body = await self._get_with_fallback(path, params)
        records, next_url = unwrap_page(body)
        out = list(records)
        pages = 1
        while next_url:
            if pages >= self.max_pages:
                logger.warning("Stopped paging %s after %d pages", path, pages)
                break
            body = await self.get(next_url)
            records, next_url = unwrap_page(body)
            out.extend(records)
            pages += 1
        logger.debug("Fetched %d records from %s over %d page(s)", len(out), path, pages)
        return out
