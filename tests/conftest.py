"""Shared fixtures: fake model-serving backend and orchestrator factory."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable

import httpx
import pytest

from brain_integration.config import BrainSettings, ProtocolConfig
from brain_integration.engines import EngineRegistry
from brain_integration.inference.remote import RemoteInferenceBackend
from brain_integration.orchestrator import BrainOrchestrator

DEFAULT_MODEL = "llama3.1:8b"


class FakeModelServer:
    """Answers `/api/tags` and `/api/generate` like a local model server."""

    def __init__(
        self,
        *,
        reply: str = "Revenue grew steadily and the company remains well capitalized.",
        models: tuple[str, ...] = (DEFAULT_MODEL,),
        down: bool = False,
        release: asyncio.Event | None = None,
    ) -> None:
        self.reply = reply
        self.models = models
        self.down = down
        self.release = release
        self.prompts: list[str] = []
        self.payloads: list[dict] = []

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)
        if request.url.path == "/api/tags":
            return httpx.Response(200, json={"models": [{"name": name} for name in self.models]})
        if request.url.path == "/api/generate":
            payload = json.loads(request.content)
            self.payloads.append(payload)
            self.prompts.append(payload["prompt"])
            if self.release is not None:
                await self.release.wait()
            return httpx.Response(200, json={"response": self.reply})
        return httpx.Response(404, json={"error": "not found"})

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def model_server() -> FakeModelServer:
    return FakeModelServer()


@pytest.fixture
def model_server_factory() -> type[FakeModelServer]:
    return FakeModelServer


@pytest.fixture
def make_orchestrator() -> Callable[..., BrainOrchestrator]:
    def _make(
        server: FakeModelServer | None = None,
        *,
        engines: EngineRegistry | None = None,
        remote: RemoteInferenceBackend | None = None,
        protocol: ProtocolConfig | None = None,
        **overrides: object,
    ) -> BrainOrchestrator:
        settings = BrainSettings(
            protocol=protocol or ProtocolConfig(enabled=False),
            **overrides,
        )
        server = server or FakeModelServer()
        return BrainOrchestrator(
            settings,
            engines=engines,
            remote_backend=remote,
            transport=server.transport(),
        )

    return _make
