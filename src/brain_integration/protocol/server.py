"""Real-time protocol server: sessions, heartbeats and request dispatch."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from fastapi import WebSocket, WebSocketDisconnect

from brain_integration.concurrency import AdmissionGate, CancellationToken, OperationCancelled
from brain_integration.config import ProtocolConfig
from brain_integration.errors import (
    BrainError,
    CapacityError,
    ClientLimitReachedError,
    ProtocolError,
    SessionNotFoundError,
)
from brain_integration.protocol import messages
from brain_integration.protocol.messages import Envelope
from brain_integration.protocol.session import ClientSession, SessionState, Transport

logger = logging.getLogger(__name__)

RequestHandler = Callable[[dict[str, Any], CancellationToken], Awaitable[Any]]

CLOSE_NORMAL = 1000
CLOSE_GOING_AWAY = 1001
CLOSE_POLICY_VIOLATION = 1008
CLOSE_TRY_AGAIN_LATER = 1013


class ProtocolServer:
    """Accepts clients over websockets and routes their requests to handlers.

    Each session processes its requests sequentially, so responses leave in
    the order requests arrived; heartbeats are answered immediately. A
    protocol violation closes only the offending session. Sweeps run on
    background tasks between `start()` and `stop()` and can also be driven
    directly with an explicit `now`.
    """

    def __init__(
        self,
        config: ProtocolConfig,
        handlers: dict[str, RequestHandler],
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        unknown = set(handlers) - messages.REQUEST_TYPES
        if unknown:
            raise ValueError(f"Handlers for unknown request types: {sorted(unknown)}")
        self.config = config
        self._handlers = dict(handlers)
        self._clock = clock
        self._sessions: dict[str, ClientSession] = {}
        self._lock = asyncio.Lock()
        self._requests = AdmissionGate(
            "protocol requests", config.max_concurrent_requests, CapacityError
        )
        self._sweeps: list[asyncio.Task[None]] = []
        self.accepted_total = 0
        self.rejected_clients_total = 0
        self.protocol_errors_total = 0
        self.heartbeat_timeouts_total = 0

    @property
    def running(self) -> bool:
        return bool(self._sweeps)

    def connected_clients(self) -> int:
        return sum(1 for session in self._sessions.values() if session.is_live)

    def session(self, client_id: str) -> ClientSession:
        try:
            return self._sessions[client_id]
        except KeyError:
            raise SessionNotFoundError(f"no session {client_id!r}") from None

    async def start(self) -> None:
        if self._sweeps:
            return
        self._sweeps = [
            asyncio.create_task(
                self._sweep_loop(self.config.heartbeat_interval_seconds, self.sweep_heartbeats),
                name="protocol-heartbeat-sweep",
            ),
            asyncio.create_task(
                self._sweep_loop(self.config.cleanup_interval_seconds, self.sweep_disconnected),
                name="protocol-cleanup-sweep",
            ),
        ]
        logger.info(
            "Protocol server started (max_clients=%d, heartbeat=%ss)",
            self.config.max_clients,
            self.config.heartbeat_interval_seconds,
        )

    async def stop(self) -> None:
        for task in self._sweeps:
            task.cancel()
        for task in self._sweeps:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._sweeps = []

        sessions = list(self._sessions.values())
        for session in sessions:
            await session.close("server shutdown", code=CLOSE_GOING_AWAY, now=self._clock())
        workers = [session.worker for session in sessions if session.worker is not None]
        for worker in workers:
            worker.cancel()
        for worker in workers:
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        self._sessions.clear()
        logger.info("Protocol server stopped")

    async def serve(self, websocket: WebSocket) -> None:
        """Run one client connection to completion."""
        session = await self.connect(websocket)
        if session is None:
            return
        try:
            while session.is_live:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
                raw = message.get("text")
                if raw is None:
                    raw = message.get("bytes") or b""
                await self.handle_frame(session, raw)
        except WebSocketDisconnect:
            pass
        except RuntimeError as exc:
            # receive after the server closed the socket
            logger.debug("Receive loop for %s ended: %s", session.client_id, exc)
        finally:
            await self.disconnect(session.client_id, "client disconnected")

    async def connect(self, websocket: WebSocket) -> ClientSession | None:
        await websocket.accept()
        async with self._lock:
            session = None
            if self.connected_clients() < self.config.max_clients:
                session = self.register(websocket)
        if session is None:
            self.rejected_clients_total += 1
            error = ClientLimitReachedError(
                f"client limit of {self.config.max_clients} reached, retry later"
            )
            logger.warning("Rejecting client: %s", error.message)
            with contextlib.suppress(Exception):
                await websocket.send_json(messages.error_message(error))
                await websocket.close(code=CLOSE_TRY_AGAIN_LATER, reason=error.code)
            return None
        await session.send(
            messages.connected(session.client_id, self.config.heartbeat_interval_seconds)
        )
        return session

    def register(self, transport: Transport) -> ClientSession:
        """Track a session for an already-accepted transport."""
        client_id = uuid.uuid4().hex
        session = ClientSession(client_id, transport, self._clock())
        session.state = SessionState.CONNECTED
        session.worker = asyncio.create_task(
            self._session_worker(session), name=f"protocol-session-{client_id[:8]}"
        )
        self._sessions[client_id] = session
        self.accepted_total += 1
        logger.info("Client %s connected (%d live)", client_id, self.connected_clients())
        return session

    async def disconnect(self, client_id: str, reason: str, *, code: int = CLOSE_NORMAL) -> bool:
        session = self._sessions.get(client_id)
        if session is None:
            return False
        closed = await session.close(reason, code=code, now=self._clock())
        if closed:
            logger.info("Client %s disconnected: %s", client_id, reason)
        return closed

    async def send_to(self, client_id: str, message: dict[str, Any]) -> bool:
        """Send to one client; unknown or closed sessions are a no-op."""
        session = self._sessions.get(client_id)
        if session is None:
            return False
        return await session.send(message)

    async def handle_frame(self, session: ClientSession, raw: str | bytes) -> None:
        session.touch(self._clock())
        try:
            envelope = messages.parse_envelope(raw)
        except ProtocolError as exc:
            self.protocol_errors_total += 1
            logger.warning("Protocol violation from %s: %s", session.client_id, exc.message)
            await session.send(messages.error_message(exc))
            await self.disconnect(session.client_id, exc.code, code=CLOSE_POLICY_VIOLATION)
            return

        if envelope.type == messages.HEARTBEAT:
            await session.send(messages.heartbeat_ack(envelope.request_id))
            return

        if session.pending_request_count >= self.config.max_pending_per_session:
            error = CapacityError(
                f"{session.pending_request_count} request(s) already pending for this client"
            )
            await session.send(messages.error_response(envelope.type, envelope.request_id, error))
            return
        session.pending_request_count += 1
        session.queue.put_nowait(envelope)

    async def sweep_heartbeats(self, now: float | None = None) -> list[str]:
        """Disconnect live sessions silent for longer than the heartbeat interval."""
        now = self._clock() if now is None else now
        stale = [
            session.client_id
            for session in list(self._sessions.values())
            if session.is_live
            and now - session.last_heartbeat_at > self.config.heartbeat_interval_seconds
        ]
        for client_id in stale:
            self.heartbeat_timeouts_total += 1
            await self.disconnect(client_id, "heartbeat timeout", code=CLOSE_GOING_AWAY)
        return stale

    async def sweep_disconnected(self, now: float | None = None) -> int:
        """Forget disconnected sessions whose worker has finished."""
        async with self._lock:
            dead = [
                client_id
                for client_id, session in self._sessions.items()
                if session.state is SessionState.DISCONNECTED
                and (session.worker is None or session.worker.done())
            ]
            for client_id in dead:
                del self._sessions[client_id]
        if dead:
            logger.debug("Removed %d disconnected session(s)", len(dead))
        return len(dead)

    def stats(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "connected_clients": self.connected_clients(),
            "tracked_sessions": len(self._sessions),
            "max_clients": self.config.max_clients,
            "accepted_total": self.accepted_total,
            "rejected_clients_total": self.rejected_clients_total,
            "protocol_errors_total": self.protocol_errors_total,
            "heartbeat_timeouts_total": self.heartbeat_timeouts_total,
            "requests": self._requests.stats(),
            "sessions": [session.to_dict() for session in self._sessions.values()],
        }

    async def _sweep_loop(self, interval: float, sweep: Callable[[], Awaitable[Any]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await sweep()
            except Exception:
                logger.exception("Protocol sweep failed")

    async def _session_worker(self, session: ClientSession) -> None:
        while True:
            envelope = await session.queue.get()
            if envelope is None:
                return
            try:
                if session.is_live:
                    await self._process(session, envelope)
            finally:
                session.pending_request_count -= 1

    async def _process(self, session: ClientSession, envelope: Envelope) -> None:
        handler = self._handlers.get(envelope.type)
        if handler is None:
            error = BrainError(f"{envelope.type} is not served here")
            await session.send(messages.error_response(envelope.type, envelope.request_id, error))
            return

        token = session.new_token()
        message: dict[str, Any] | None
        try:
            with self._requests.admit():
                session.state = SessionState.PROCESSING
                result = await handler(envelope.data, token)
            message = messages.response(envelope.type, envelope.request_id, result)
        except OperationCancelled:
            message = None
        except BrainError as exc:
            message = messages.error_response(envelope.type, envelope.request_id, exc)
        except Exception:
            logger.exception("Handler %s failed for %s", envelope.type, session.client_id)
            message = messages.error_response(
                envelope.type, envelope.request_id, BrainError("internal error")
            )
        finally:
            session.release_token(token)

        if message is None or token.cancelled:
            logger.debug(
                "Discarding %s result for %s: %s",
                envelope.type,
                session.client_id,
                token.reason,
            )
            return
        await session.send(message)
        if session.is_live:
            session.state = SessionState.IDLE
