"""Remote fallback backend built on a LangChain chat model."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from brain_integration.config import FallbackConfig, GenerationConfig
from brain_integration.errors import InferenceTimeoutError, InferenceUnavailableError

logger = logging.getLogger(__name__)


def create_chat_model(config: FallbackConfig) -> Any | None:
    """Build the remote chat model, or return None when it cannot be configured."""
    if not config.enabled or not config.api_key:
        return None

    from langchain_openai import ChatOpenAI

    return ChatOpenAI(
        model=config.model,
        api_key=config.api_key,
        base_url=config.base_url,
        timeout=config.timeout_seconds,
        max_retries=0,
    )


class RemoteInferenceBackend:
    """Secondary backend used only after the local client reports unavailability.

    Any LangChain chat model works; generation options are bound per call.
    `top_k` is not forwarded because hosted chat APIs do not accept it.
    """

    name = "remote"

    def __init__(self, llm: Any, *, timeout_seconds: float = 60.0) -> None:
        self.llm = llm
        self.timeout_seconds = timeout_seconds
        self.total_requests = 0
        self.failed_requests = 0

    async def generate(self, prompt: str, config: GenerationConfig) -> str:
        self.total_requests += 1
        model = self._bind(config)
        try:
            message = await asyncio.wait_for(model.ainvoke(prompt), timeout=self.timeout_seconds)
        except asyncio.TimeoutError as exc:
            self.failed_requests += 1
            raise InferenceTimeoutError(
                f"remote backend timed out after {self.timeout_seconds}s"
            ) from exc
        except Exception as exc:
            self.failed_requests += 1
            logger.warning("Remote inference failed: %s", exc)
            raise InferenceUnavailableError(f"remote backend failed: {exc}") from exc
        return _message_text(message)

    async def probe(self) -> bool:
        try:
            await self.generate("Reply with OK.", GenerationConfig(max_tokens=8))
        except InferenceUnavailableError:
            return False
        return True

    def stats(self) -> dict[str, Any]:
        return {
            "model": str(getattr(self.llm, "model_name", type(self.llm).__name__)),
            "total_requests": self.total_requests,
            "failed_requests": self.failed_requests,
        }

    def _bind(self, config: GenerationConfig) -> Any:
        bind = getattr(self.llm, "bind", None)
        if not callable(bind):
            return self.llm
        return bind(
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            top_p=config.top_p,
        )


def _message_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                parts.append(str(item["text"]))
            else:
                parts.append(str(item))
        return " ".join(parts).strip()
    return str(content)
