"""
KashFlow client tests over httpx.MockTransport, no network.
"""
import asyncio

import httpx
import pytest

from kfsync.kashflow.client import KashFlowClient, alternate_path, unwrap_page
from kfsync.kashflow.errors import KashFlowApiError

BASE = "https://api.kashflow.test/v2"


def _client(handler, **kwargs) -> KashFlowClient:
    http = httpx.AsyncClient(base_url=BASE, transport=httpx.MockTransport(handler))
    kwargs.setdefault("retry_backoff", 0)
    return KashFlowClient(http, **kwargs)


def _call(client: KashFlowClient, coro_fn):
    async def go():
        async with client:
            return await coro_fn(client)
    return asyncio.run(go())


# ── page parsing ─────────────────────────────────────────────────────────────

class TestUnwrapPage:
    def test_bare_list(self):
        assert unwrap_page([{"Id": 1}]) == ([{"Id": 1}], None)

    def test_envelope_with_next(self):
        body = {"Data": [{"Id": 1}], "MetaData": {"NextPageUrl": "/customers?page=2"}}
        assert unwrap_page(body) == ([{"Id": 1}], "/customers?page=2")

    def test_lowercase_envelope(self):
        assert unwrap_page({"data": [{"Id": 2}]}) == ([{"Id": 2}], None)

    def test_empty_next_is_last_page(self):
        assert unwrap_page({"Data": [], "MetaData": {"NextPageUrl": ""}}) == ([], None)

    def test_unexpected_shapes(self):
        assert unwrap_page(None) == ([], None)
        assert unwrap_page({"Data": "x"}) == ([], None)


class TestAlternatePath:
    def test_lowercases(self):
        assert alternate_path("/Customers") == "/customers"

    def test_toggles_trailing_slash(self):
        assert alternate_path("/customers") == "/customers/"
        assert alternate_path("/customers/") == "/customers"


# ── pagination ───────────────────────────────────────────────────────────────

class TestListAll:
    def test_follows_next_page_urls_in_order(self):
        pages = {
            "1": {"Data": [{"Id": 1}, {"Id": 2}], "MetaData": {"NextPageUrl": f"{BASE}/customers?page=2"}},
            "2": {"Data": [{"Id": 3}], "MetaData": {"NextPageUrl": f"{BASE}/customers?page=3"}},
            "3": {"Data": [{"Id": 4}], "MetaData": {"NextPageUrl": None}},
        }
        seen = []

        def handler(request: httpx.Request):
            page = request.url.params.get("page", "1")
            seen.append(page)
            return httpx.Response(200, json=pages[page])

        records = _call(_client(handler), lambda c: c.customers.list_all({"perpage": 200}))
        assert [r["Id"] for r in records] == [1, 2, 3, 4]
        assert seen == ["1", "2", "3"]

    def test_single_bare_array(self):
        def handler(request):
            return httpx.Response(200, json=[{"Id": 1}])

        assert _call(_client(handler), lambda c: c.nominals.list_all()) == [{"Id": 1}]

    def test_empty_collection(self):
        def handler(request):
            return httpx.Response(200, json={"Data": [], "MetaData": {}})

        assert _call(_client(handler), lambda c: c.projects.list_all()) == []

    def test_max_pages_guard(self):
        def handler(request):
            return httpx.Response(200, json={"Data": [{"Id": 1}], "MetaData": {"NextPageUrl": f"{BASE}/loop"}})

        records = _call(_client(handler, max_pages=3), lambda c: c.customers.list_all())
        assert len(records) == 3

    def test_404_retries_alternate_path(self):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            if request.url.path.endswith("/nominals"):
                return httpx.Response(404, json={"Error": "NotFound", "Message": "No such route"})
            return httpx.Response(200, json=[{"Code": "4000"}])

        records = _call(_client(handler), lambda c: c.nominals.list())
        assert records == [{"Code": "4000"}]
        assert paths == ["/v2/nominals", "/v2/nominals/"]


# ── errors and retries ───────────────────────────────────────────────────────

class TestRequest:
    def test_retries_transient_status(self):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) < 3:
                return httpx.Response(503)
            return httpx.Response(200, json={"Id": 1})

        assert _call(_client(handler, max_retries=3), lambda c: c.customers.get("C1")) == {"Id": 1}
        assert len(calls) == 3

    def test_gives_up_after_max_retries(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(502)

        with pytest.raises(KashFlowApiError) as info:
            _call(_client(handler, max_retries=2), lambda c: c.customers.get("C1"))
        assert info.value.status == 502
        assert len(calls) == 3

    def test_retries_network_errors(self):
        calls = []

        def handler(request):
            calls.append(1)
            if len(calls) == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json=[])

        assert _call(_client(handler), lambda c: c.invoices.list()) == []
        assert len(calls) == 2

    def test_client_error_not_retried_and_parsed(self):
        calls = []

        def handler(request):
            calls.append(1)
            return httpx.Response(400, json={"Error": "ValidationError", "Message": "Bad code"})

        with pytest.raises(KashFlowApiError) as info:
            _call(_client(handler), lambda c: c.customers.get("C1"))
        err = info.value
        assert (err.status, err.error_code, err.api_message) == (400, "ValidationError", "Bad code")
        assert len(calls) == 1

    def test_customer_code_is_url_encoded(self):
        paths = []

        def handler(request):
            paths.append(request.url.raw_path.decode())
            return httpx.Response(200, json={"Code": "A/B 1"})

        _call(_client(handler), lambda c: c.customers.get("A/B 1"))
        assert paths == ["/v2/customers/A%2FB%201"]

    def test_empty_body_is_none(self):
        def handler(request):
            return httpx.Response(204)

        assert _call(_client(handler), lambda c: c.request_json("PUT", "/customers/C1", json={})) is None
