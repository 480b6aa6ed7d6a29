"""WebSocket stream of job lifecycle events."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any, Dict, Set, Tuple
from uuid import uuid4

from fastapi import WebSocket
from starlette.websockets import WebSocketDisconnect

from shared.utils import setup_logging

logger = setup_logging("job-event-stream")


class JobEventStreamManager:
    """Track WebSocket clients and the jobs each one follows."""

    def __init__(self) -> None:
        self._connections: Dict[str, WebSocket] = {}
        self._job_subscriptions: Dict[str, Set[str]] = defaultdict(set)
        self._client_jobs: Dict[str, Set[str]] = defaultdict(set)
        self._lock = asyncio.Lock()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket, client_id: str | None = None) -> str:
        """Accept WebSocket connection and register client."""
        client_key = client_id or str(uuid4())
        await websocket.accept()
        async with self._lock:
            self._connections[client_key] = websocket
        return client_key

    async def disconnect(self, client_id: str) -> None:
        """Remove client connection and subscriptions."""
        websocket: WebSocket | None = None
        async with self._lock:
            websocket = self._connections.pop(client_id, None)
            for job_id in self._client_jobs.pop(client_id, set()):
                self._drop_subscriber(job_id, client_id)
        if websocket:
            await self._close_quietly(client_id, websocket)

    async def subscribe(self, client_id: str, job_id: str) -> None:
        async with self._lock:
            if client_id not in self._connections:
                raise RuntimeError("Client not connected")
            self._job_subscriptions[job_id].add(client_id)
            self._client_jobs[client_id].add(job_id)

    async def unsubscribe(self, client_id: str, job_id: str | None = None) -> None:
        """Unsubscribe a client from one job, or from all of them when job_id is None."""
        async with self._lock:
            if client_id not in self._connections:
                return
            job_ids = list(self._client_jobs.get(client_id, set())) if job_id is None else [job_id]
            for jid in job_ids:
                self._drop_subscriber(jid, client_id)
            if job_id is None:
                self._client_jobs.pop(client_id, None)
            else:
                self._client_jobs.get(client_id, set()).discard(job_id)

    async def send_job_event(self, job_id: str, event: dict[str, Any]) -> int:
        """Send an event to every subscriber of a job. Returns the number of clients reached."""
        recipients: list[Tuple[str, WebSocket]] = []
        async with self._lock:
            for client_id in list(self._job_subscriptions.get(job_id, set())):
                websocket = self._connections.get(client_id)
                if websocket:
                    recipients.append((client_id, websocket))
        return await self._deliver(recipients, event)

    async def broadcast(self, message: dict[str, Any]) -> int:
        """Send a message to all connected clients."""
        async with self._lock:
            recipients = list(self._connections.items())
        return await self._deliver(recipients, message)

    async def reset(self) -> None:
        """Clear all connections and subscriptions (primarily for tests)."""
        async with self._lock:
            connections = list(self._connections.items())
            self._connections.clear()
            self._job_subscriptions.clear()
            self._client_jobs.clear()
        for client_id, websocket in connections:
            await self._close_quietly(client_id, websocket)

    async def _deliver(self, recipients: list[Tuple[str, WebSocket]], message: dict[str, Any]) -> int:
        delivered = 0
        for client_id, websocket in recipients:
            try:
                await websocket.send_json(message)
                delivered += 1
            except (WebSocketDisconnect, RuntimeError, ConnectionError) as exc:
                logger.info("Dropping WebSocket client %s: %s", client_id, exc)
                await self.disconnect(client_id)
        return delivered

    def _drop_subscriber(self, job_id: str, client_id: str) -> None:
        subscribers = self._job_subscriptions.get(job_id)
        if subscribers:
            subscribers.discard(client_id)
            if not subscribers:
                self._job_subscriptions.pop(job_id, None)

    @staticmethod
    async def _close_quietly(client_id: str, websocket: WebSocket) -> None:
        try:
            await websocket.close()
        except (RuntimeError, ConnectionError) as exc:
            logger.debug("WebSocket client %s already closed: %s", client_id, exc)


# Shared manager instance
event_stream = JobEventStreamManager()
