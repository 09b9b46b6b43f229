"""
Session-token flow tests over httpx.MockTransport.
"""
import asyncio
import json

import httpx
import pytest

from kfsync.core.config import Settings
from kfsync.kashflow.auth import _memorable_word_positions, get_session_token
from kfsync.kashflow.client import KashFlowClient
from kfsync.kashflow.errors import KashFlowApiError, KashFlowAuthError


def _settings(**kwargs) -> Settings:
    base = dict(_env_file=None, kashflow_base_url="https://api.kashflow.test/v2")
    base.update(kwargs)
    return Settings(**base)


def _token(settings, handler):
    async def go():
        async with httpx.AsyncClient(
            base_url=settings.kashflow_base_url, transport=httpx.MockTransport(handler)
        ) as http:
            return await get_session_token(settings, http)
    return asyncio.run(go())


class TestMemorableWordPositions:
    def test_comma_string(self):
        assert _memorable_word_positions({"MemorableWordPositions": "1, 4,6"}) == [1, 4, 6]

    def test_word_list(self):
        body = {"MemorableWordList": [{"Position": 2}, {"Position": 5}, {"Value": "x"}]}
        assert _memorable_word_positions(body) == [2, 5]

    def test_list_of_numbers(self):
        assert _memorable_word_positions({"RequiredChars": ["1", 3]}) == [1, 3]

    def test_none_requested(self):
        assert _memorable_word_positions({}) == []


class TestGetSessionToken:
    def test_preissued_token_skips_flow(self):
        def handler(request):
            raise AssertionError("no request expected")

        assert _token(_settings(kashflow_session_token="abc"), handler) == "abc"

    def test_missing_credentials(self):
        with pytest.raises(KashFlowAuthError):
            _token(_settings(), lambda r: httpx.Response(200))

    def test_two_step_flow(self):
        sent = []

        def handler(request):
            body = json.loads(request.content)
            sent.append((request.method, body))
            if request.method == "POST":
                return httpx.Response(200, json={"TemporaryToken": "tmp", "MemorableWordList": [{"Position": 1}, {"Position": 3}]})
            return httpx.Response(200, json={"SessionToken": "perm"})

        s = _settings(kashflow_username="u", kashflow_password="p", kashflow_memorable_word="secret")
        assert _token(s, handler) == "perm"
        assert sent[0] == ("POST", {"Username": "u", "Password": "p", "KeepUserLoggedIn": False})
        method, body = sent[1]
        assert method == "PUT"
        assert body["TemporaryToken"] == "tmp"
        assert body["MemorableWordList"] == [{"Position": 1, "Value": "s"}, {"Position": 3, "Value": "c"}]

    def test_memorable_word_required(self):
        def handler(request):
            return httpx.Response(200, json={"TemporaryToken": "tmp", "MemorableWordPositions": "1,2"})

        s = _settings(kashflow_username="u", kashflow_password="p")
        with pytest.raises(KashFlowAuthError):
            _token(s, handler)

    def test_no_positions_uses_temporary_token(self):
        def handler(request):
            return httpx.Response(200, json={"TemporaryToken": "tmp"})

        s = _settings(kashflow_username="u", kashflow_password="p")
        assert _token(s, handler) == "tmp"

    def test_password_expired_surfaces_error_code(self):
        def handler(request):
            return httpx.Response(401, json={"Error": "PasswordExpired", "Message": "Your password has expired"})

        s = _settings(kashflow_username="u", kashflow_password="p")
        with pytest.raises(KashFlowApiError) as info:
            _token(s, handler)
        assert info.value.error_code == "PasswordExpired"


class TestClientCreate:
    def test_bearer_header_set(self):
        seen = []

        def handler(request):
            seen.append(request.headers.get("authorization"))
            return httpx.Response(200, json={"Company": "Test"})

        async def go():
            client = await KashFlowClient.create(
                _settings(kashflow_session_token="tok"), transport=httpx.MockTransport(handler)
            )
            async with client:
                return await client.metadata.get()

        assert asyncio.run(go()) == {"Company": "Test"}
        assert seen == ["Bearer tok"]
