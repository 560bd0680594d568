#!/usr/bin/env python3
"""
Sentinel Dispatch - Fan-out Publisher

Single broadcast point for lifecycle and telemetry events. Dashboards
connect over WebSocket (/ws); in-process listeners can register a callback.

Delivery is best-effort: publish() enqueues and returns immediately, a
single worker task sends events in publish order, and a socket that fails
or times out is dropped.

Event names:
- alert_active      new ACTIVE alert (alert + sensor summary)
- alert_resolved    {id, status, decision, decidedAt}
- alert_deleted     {id}
- drone_telemetry   normalized telemetry message
- mission_started   dispatch summary after a successful send_drone
"""

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from fastapi import WebSocket

logger = logging.getLogger(__name__)

EVENT_NAMES = (
    "alert_active",
    "alert_resolved",
    "alert_deleted",
    "drone_telemetry",
    "mission_started",
)

Listener = Callable[[str, Dict[str, Any]], None]


class FanoutPublisher:
    """Best-effort broadcast to WebSocket clients and in-process listeners"""

    def __init__(self, send_timeout_s: float = 2.0):
        self.send_timeout_s = send_timeout_s
        self._connections: Set[WebSocket] = set()
        self._listeners: List[Listener] = []
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self.stats = {'published': 0, 'delivered': 0, 'dropped_sockets': 0}

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self._connections.add(websocket)
        logger.info(f"Fan-out client connected ({len(self._connections)} total)")

    def disconnect(self, websocket: WebSocket):
        if websocket in self._connections:
            self._connections.discard(websocket)
            logger.info(f"Fan-out client disconnected ({len(self._connections)} total)")

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    def publish(self, event: str, payload: Dict[str, Any]):
        """Queue an event for broadcast. Never raises, never blocks."""
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"Fan-out not running, dropping {event}")
            return

        try:
            if self._worker is None or self._worker.done():
                self._queue = asyncio.Queue()
                self._worker = asyncio.create_task(self._run(self._queue), name="fanout")
            self._queue.put_nowait((event, payload))
            self.stats['published'] += 1
        except Exception as e:
            logger.error(f"Failed to queue {event}: {e}")

    async def _run(self, queue: asyncio.Queue):
        while True:
            event, payload = await queue.get()
            try:
                await self._broadcast(event, payload)
            except Exception as e:
                logger.error(f"Broadcast of {event} failed: {e}", exc_info=True)
            finally:
                queue.task_done()

    async def _broadcast(self, event: str, payload: Dict[str, Any]):
        for listener in list(self._listeners):
            try:
                listener(event, payload)
            except Exception as e:
                logger.error(f"Fan-out listener failed on {event}: {e}")

        message = {"event": event, "data": payload}
        stale_sockets: List[WebSocket] = []
        for websocket in list(self._connections):
            try:
                await asyncio.wait_for(websocket.send_json(message), timeout=self.send_timeout_s)
                self.stats['delivered'] += 1
            except Exception as e:
                logger.debug(f"Dropping fan-out client after send failure: {e!r}")
                stale_sockets.append(websocket)

        for websocket in stale_sockets:
            self._connections.discard(websocket)
            self.stats['dropped_sockets'] += 1

    async def drain(self):
        """Wait until every queued event has been broadcast"""
        if self._queue is not None and self._worker is not None and not self._worker.done():
            await self._queue.join()

    async def close(self):
        """Flush pending events, stop the worker and close all sockets"""
        try:
            await asyncio.wait_for(self.drain(), timeout=self.send_timeout_s * 2)
        except asyncio.TimeoutError:
            logger.warning("Fan-out close timed out with events still queued")

        worker, self._worker = self._worker, None
        if worker is not None:
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

        connections: Tuple[WebSocket, ...] = tuple(self._connections)
        self._connections.clear()
        for websocket in connections:
            try:
                await websocket.close()
            except Exception as e:
                logger.debug(f"Error closing fan-out socket: {e!r}")
        logger.info("Fan-out publisher closed")
