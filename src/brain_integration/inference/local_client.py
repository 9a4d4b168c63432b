"""HTTP client for the locally hosted model-serving backend."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any

import httpx

from brain_integration.config import GenerationConfig, InferenceConfig
from brain_integration.errors import (
    InferenceConfigError,
    InferenceTimeoutError,
    InferenceUnavailableError,
)

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ModelProbe:
    success: bool
    latency_ms: float
    model: str
    error: str | None = None


class LocalInferenceClient:
    """Issues generation requests to the local backend.

    Every call is bounded by `InferenceConfig.timeout_seconds`. Failures are
    reported as `InferenceUnavailableError` (or its `InferenceTimeoutError`
    subclass); the client never fails over on its own, the caller decides
    whether to use a fallback backend.
    """

    name = "local"

    def __init__(
        self,
        config: InferenceConfig | None = None,
        *,
        default_generation: GenerationConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or InferenceConfig()
        self.default_generation = default_generation or GenerationConfig()
        self._client = httpx.AsyncClient(
            base_url=self.config.base_url,
            timeout=httpx.Timeout(self.config.timeout_seconds),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )
        self.total_requests = 0
        self.failed_requests = 0
        self.total_latency_ms = 0.0

    async def generate(self, prompt: str, config: GenerationConfig | None = None) -> str:
        config = config or self.default_generation
        payload = {
            "model": config.model,
            "prompt": prompt,
            "temperature": config.temperature,
            "max_tokens": config.max_tokens,
            "top_p": config.top_p,
            "top_k": config.top_k,
            "stream": False,
        }
        start = time.perf_counter()
        self.total_requests += 1
        try:
            response = await self._post("/api/generate", payload, self.config.timeout_seconds)
            data = response.json()
            if data.get("error"):
                raise InferenceUnavailableError(f"local backend error: {data['error']}")
            text = data.get("response")
            if not isinstance(text, str):
                raise InferenceUnavailableError("local backend returned no text")
            return text
        except Exception:
            self.failed_requests += 1
            raise
        finally:
            self.total_latency_ms += (time.perf_counter() - start) * 1000.0

    async def list_models(self) -> set[str]:
        response = await self._get("/api/tags", self.config.probe_timeout_seconds)
        models = response.json().get("models", [])
        return {str(item.get("name")) for item in models if item.get("name")}

    async def test_model(self, model: str | None = None) -> ModelProbe:
        """Run a tiny generation and report whether it succeeded and how long it took."""
        probe_config = self.default_generation.model_copy(
            update={"max_tokens": 8, **({"model": model} if model else {})}
        )
        start = time.perf_counter()
        try:
            await self.generate("Reply with OK.", probe_config)
        except (InferenceUnavailableError, InferenceConfigError) as exc:
            return ModelProbe(
                success=False,
                latency_ms=(time.perf_counter() - start) * 1000.0,
                model=probe_config.model,
                error=exc.message,
            )
        return ModelProbe(
            success=True,
            latency_ms=(time.perf_counter() - start) * 1000.0,
            model=probe_config.model,
        )

    def stats(self) -> dict[str, Any]:
        succeeded = self.total_requests - self.failed_requests
        return {
            "base_url": self.config.base_url,
            "default_model": self.default_generation.model,
            "total_requests": self.total_requests,
            "failed_requests": self.failed_requests,
            "avg_latency_ms": self.total_latency_ms / self.total_requests
            if self.total_requests
            else 0.0,
            "success_rate": succeeded / self.total_requests if self.total_requests else 1.0,
        }

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post(self, path: str, payload: dict[str, Any], timeout: float) -> httpx.Response:
        return await self._call(self._client.post(path, json=payload), path, timeout)

    async def _get(self, path: str, timeout: float) -> httpx.Response:
        return await self._call(self._client.get(path), path, timeout)

    async def _call(self, request: Any, path: str, timeout: float) -> httpx.Response:
        try:
            response = await asyncio.wait_for(request, timeout=timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            logger.warning("Local inference %s timed out after %.1fs", path, timeout)
            raise InferenceTimeoutError(f"local backend timed out after {timeout}s") from exc
        except httpx.HTTPError as exc:
            logger.warning("Local inference %s unreachable: %s", path, exc)
            raise InferenceUnavailableError(f"local backend unreachable: {exc}") from exc

        if response.status_code >= 500:
            raise InferenceUnavailableError(
                f"local backend returned {response.status_code} for {path}"
            )
        if response.status_code >= 400:
            raise InferenceConfigError(
                f"local backend rejected {path} ({response.status_code}): {response.text[:200]}"
            )
        return response
