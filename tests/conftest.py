"""Fixtures compartidas: flota de balanzas simulada sobre httpx.MockTransport."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Iterable, Tuple

import httpx
import pytest

from scale_gateway.schemas import ValidatedRegistration
from scale_gateway.services.ledger import RegistrationLedger


class FakeFleet:
    """
    Simula equipos que exponen /scales y /scales/{name}/weight.

    readings: {(host, scale_name): cuerpo JSON | httpx.Response}
    down:     hosts que rechazan la conexión
    slow:     hosts que tardan `delay` segundos en responder
    """

    def __init__(self, readings: Dict[Tuple[str, str], Any] | None = None,
                 down: Iterable[str] = (), slow: Iterable[str] = (), delay: float = 1.0,
                 listings: Dict[str, Any] | None = None):
        self.readings = readings or {}
        self.listings = listings or {}
        self.down = set(down)
        self.slow = set(slow)
        self.delay = delay
        self.requests: list[httpx.Request] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if host in self.slow:
            await asyncio.sleep(self.delay)
        if host in self.down:
            raise httpx.ConnectError("Connection refused", request=request)

        parts = request.url.path.strip("/").split("/")
        if parts == ["scales"] and host in self.listings:
            return httpx.Response(200, json=self.listings[host])
        if len(parts) == 3 and parts[0] == "scales" and parts[2] == "weight":
            body = self.readings.get((host, parts[1]))
            if isinstance(body, httpx.Response):
                return body
            if body is not None:
                return httpx.Response(200, json=body)
        return httpx.Response(404, json={"detail": "Not Found"})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def fleet() -> FakeFleet:
    return FakeFleet(
        readings={
            ("192.168.1.50", "scale_left"): {"weight": 12.3},
            ("192.168.1.50", "scale_right"): {"weight": 7.5, "unit": "lb"},
            ("192.168.1.51", "scale_a"): 3.25,
        },
        listings={"192.168.1.50": ["scale_left", "scale_right"]},
    )


@pytest.fixture
def ledger() -> RegistrationLedger:
    return RegistrationLedger(max_entries=1000)


@pytest.fixture
def validated() -> ValidatedRegistration:
    return ValidatedRegistration(scale_name="scale_left", weight=12.3, sscc_number="00123456789012345678")


@pytest.fixture
def make_fleet():
    return FakeFleet
