"""Tests de services.sink: reenvío al sistema de registro tolerante a cambios de esquema."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
import pytest

from scale_gateway.errors import ErrorKind, SinkError
from scale_gateway.schemas import Registration
from scale_gateway.services.sink import API_PATH, ClientCredentialsProvider, DataverseSink, TokenCache

BASE = "https://org.example.crm4.dynamics.com"
TABLES = ["cr417_bc_weightregistrations", "cr417_weightregistrations", "weightregistrations"]
VARIANTS = [
    {"sscc": "cr417_sscc_no", "weight": "cr417_weight"},
    {"sscc": "sscc_no", "weight": "weight"},
]


class FakeRemote:
    def __init__(self, tables=("cr417_weightregistrations",), sscc_field="sscc_no", body_id=False):
        self.tables = set(tables)
        self.sscc_field = sscc_field
        self.body_id = body_id
        self.valid_token = "tok-1"
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.headers.get("Authorization") != f"Bearer {self.valid_token}":
            return httpx.Response(401, json={"error": "token expired"})
        table = request.url.path[len(API_PATH):].strip("/")
        if table not in self.tables:
            return httpx.Response(404, json={"error": "Resource not found"})
        if request.method == "GET":
            return httpx.Response(200, json={"value": []})
        body = json.loads(request.content)
        if self.sscc_field not in body:
            return httpx.Response(400, json={"error": "Invalid property"})
        if self.body_id:
            return httpx.Response(201, json={f"{table}id": "body-guid"})
        return httpx.Response(204, headers={"OData-EntityId": f"{BASE}{API_PATH}/{table}(abc-123)"})

    def calls(self, method: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method]


class FakeProvider:
    def __init__(self, expires_in: float = 3600):
        self.calls = 0
        self.expires_in = expires_in

    async def __call__(self, client):
        self.calls += 1
        return f"tok-{self.calls}", self.expires_in


def _registration() -> Registration:
    now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    return Registration(
        id="reg_1714564800000_abc", scale_name="scale_left", weight=12.3,
        sscc_number="00123456789012345678", source="barcode_scanner",
        raspberry_ip="10.0.0.7", scan_timestamp=now, processed_at=now,
    )


def _sink(remote: FakeRemote, provider: FakeProvider | None = None) -> tuple[DataverseSink, FakeProvider]:
    provider = provider or FakeProvider()
    client = httpx.AsyncClient(transport=httpx.MockTransport(remote))
    sink = DataverseSink(client, BASE, TokenCache(provider), tables=TABLES, field_variants=VARIANTS)
    return sink, provider


class TestSubmit:
    @pytest.mark.asyncio
    async def test_tries_tables_and_fields_then_caches(self):
        remote = FakeRemote()
        sink, provider = _sink(remote)

        receipt = await sink.submit(_registration())
        assert receipt.table == "cr417_weightregistrations"
        assert receipt.fields == {"sscc": "sscc_no", "weight": "weight"}
        assert receipt.remote_id == "abc-123"
        assert len(remote.calls("GET")) == 2
        assert len(remote.calls("POST")) == 2

        remote.requests.clear()
        await sink.submit(_registration())
        assert remote.calls("GET") == []
        posts = remote.calls("POST")
        assert len(posts) == 1
        assert json.loads(posts[0].content) == {"sscc_no": "00123456789012345678", "weight": 12.3}
        assert provider.calls == 1

    @pytest.mark.asyncio
    async def test_remote_id_from_body(self):
        sink, _ = _sink(FakeRemote(body_id=True))
        receipt = await sink.submit(_registration())
        assert receipt.remote_id == "body-guid"

    @pytest.mark.asyncio
    async def test_schema_not_found(self):
        sink, _ = _sink(FakeRemote(tables=["something_else"]))
        with pytest.raises(SinkError) as exc_info:
            await sink.submit(_registration())
        assert exc_info.value.kind == ErrorKind.SINK_SCHEMA_NOT_FOUND

    @pytest.mark.asyncio
    async def test_all_field_variants_rejected(self):
        sink, _ = _sink(FakeRemote(sscc_field="SSCC"))
        with pytest.raises(SinkError) as exc_info:
            await sink.submit(_registration())
        assert exc_info.value.kind == ErrorKind.SINK_REJECTED
        assert "HTTP 400" in exc_info.value.detail

    @pytest.mark.asyncio
    async def test_auth_expired_then_reacquired(self):
        remote = FakeRemote()
        sink, provider = _sink(remote)
        await sink.submit(_registration())

        remote.valid_token = "tok-2"  # el servidor revoca el token en curso
        with pytest.raises(SinkError) as exc_info:
            await sink.submit(_registration())
        assert exc_info.value.kind == ErrorKind.SINK_AUTH_EXPIRED

        receipt = await sink.submit(_registration())
        assert receipt.remote_id == "abc-123"
        assert provider.calls == 2

    @pytest.mark.asyncio
    async def test_table_removed_clears_cache(self):
        remote = FakeRemote()
        sink, _ = _sink(remote)
        await sink.submit(_registration())

        remote.tables = {"weightregistrations"}
        with pytest.raises(SinkError) as exc_info:
            await sink.submit(_registration())
        assert exc_info.value.kind == ErrorKind.SINK_SCHEMA_NOT_FOUND
        assert sink.table is None

        receipt = await sink.submit(_registration())
        assert receipt.table == "weightregistrations"


class TestTokenCache:
    @pytest.mark.asyncio
    async def test_reuses_until_expiry(self):
        now = [0.0]
        provider = FakeProvider(expires_in=120)
        cache = TokenCache(provider, margin_s=60, clock=lambda: now[0])

        assert await cache.get(None) == "tok-1"
        now[0] = 59.0
        assert await cache.get(None) == "tok-1"
        now[0] = 61.0
        assert await cache.get(None) == "tok-2"
        assert provider.calls == 2

    @pytest.mark.asyncio
    async def test_invalidate_forces_new_token(self):
        provider = FakeProvider()
        cache = TokenCache(provider)
        await cache.get(None)
        cache.invalidate()
        assert not cache.valid
        assert await cache.get(None) == "tok-2"


class TestClientCredentialsProvider:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(200, json={}),
        httpx.Response(200, text="<html>ok</html>"),
    ])
    async def test_malformed_token_response(self, response):
        async def token_endpoint(request: httpx.Request) -> httpx.Response:
            return response

        provider = ClientCredentialsProvider("tenant", "client", "secret", "scope/.default")
        async with httpx.AsyncClient(transport=httpx.MockTransport(token_endpoint)) as client:
            with pytest.raises(SinkError) as exc_info:
                await provider(client)
        assert exc_info.value.kind == ErrorKind.SINK_AUTH_EXPIRED
        assert exc_info.value.detail == "Malformed token response"

    @pytest.mark.asyncio
    async def test_token_and_expiry(self):
        async def token_endpoint(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 1800})

        provider = ClientCredentialsProvider("tenant", "client", "secret", "scope/.default")
        async with httpx.AsyncClient(transport=httpx.MockTransport(token_endpoint)) as client:
            assert await provider(client) == ("tok", 1800.0)
