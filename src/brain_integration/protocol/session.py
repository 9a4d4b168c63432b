"""Per-client session state for the real-time protocol."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol

from brain_integration.concurrency import CancellationToken
from brain_integration.protocol.messages import Envelope

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    CONNECTING = "connecting"
    CONNECTED = "connected"
    IDLE = "idle"
    PROCESSING = "processing"
    DISCONNECTED = "disconnected"


class Transport(Protocol):
    """The slice of a websocket a session needs."""

    async def send_json(self, data: Any) -> None: ...

    async def close(self, code: int = 1000, reason: str | None = None) -> None: ...


class ClientSession:
    """One connected client.

    Requests are queued and processed one at a time in arrival order.
    Once the session is `DISCONNECTED` every send is a silent no-op and
    every outstanding cancellation token is set.
    """

    def __init__(self, client_id: str, transport: Transport, now: float) -> None:
        self.client_id = client_id
        self.transport = transport
        self.state = SessionState.CONNECTING
        self.connected_at = now
        self.last_heartbeat_at = now
        self.disconnected_at: float | None = None
        self.close_reason: str | None = None
        self.pending_request_count = 0
        self.messages_received = 0
        self.messages_sent = 0
        # None wakes the worker so it can exit after a disconnect
        self.queue: asyncio.Queue[Envelope | None] = asyncio.Queue()
        self.worker: asyncio.Task[None] | None = None
        self._tokens: set[CancellationToken] = set()

    @property
    def is_live(self) -> bool:
        return self.state not in (SessionState.CONNECTING, SessionState.DISCONNECTED)

    def touch(self, now: float) -> None:
        self.last_heartbeat_at = now
        self.messages_received += 1

    def new_token(self) -> CancellationToken:
        token = CancellationToken()
        if self.state is SessionState.DISCONNECTED:
            token.cancel(self.close_reason or "session closed")
        else:
            self._tokens.add(token)
        return token

    def release_token(self, token: CancellationToken) -> None:
        self._tokens.discard(token)

    async def send(self, message: dict[str, Any]) -> bool:
        if not self.is_live:
            logger.debug("Dropping %s for closed session %s", message.get("type"), self.client_id)
            return False
        try:
            await self.transport.send_json(message)
        except Exception as exc:
            logger.warning("Send to %s failed: %s", self.client_id, exc)
            self.mark_disconnected(f"send failed: {exc}")
            return False
        self.messages_sent += 1
        return True

    def mark_disconnected(self, reason: str, now: float | None = None) -> bool:
        """Move to `DISCONNECTED` and cancel in-flight work. Returns False if already there."""
        if self.state is SessionState.DISCONNECTED:
            return False
        self.state = SessionState.DISCONNECTED
        self.close_reason = reason
        self.disconnected_at = now
        for token in self._tokens:
            token.cancel(reason)
        self._tokens.clear()
        self.queue.put_nowait(None)
        return True

    async def close(self, reason: str, *, code: int = 1000, now: float | None = None) -> bool:
        if not self.mark_disconnected(reason, now):
            return False
        try:
            await self.transport.close(code=code, reason=reason[:120])
        except Exception as exc:
            # the peer may already be gone
            logger.debug("Closing transport for %s: %s", self.client_id, exc)
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "client_id": self.client_id,
            "state": self.state.value,
            "connected_at": _iso(self.connected_at),
            "last_heartbeat_at": _iso(self.last_heartbeat_at),
            "pending_request_count": self.pending_request_count,
            "messages_received": self.messages_received,
            "messages_sent": self.messages_sent,
        }


def _iso(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()
