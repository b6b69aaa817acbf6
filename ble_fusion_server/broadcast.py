from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect


logger = logging.getLogger(__name__)

CHANNELS = ("positions", "zones", "alerts", "stats")
DEFAULT_CHANNELS = ("positions",)


@dataclass(eq=False)
class _Client:
    websocket: WebSocket
    queue: asyncio.Queue
    channels: Set[str] = field(default_factory=lambda: set(DEFAULT_CHANNELS))
    dropped: int = 0


class Broadcaster:
    """
    Fan-out of ``{type, data}`` messages to WebSocket subscribers.

    ``publish`` may be called from any thread (MQTT callback, periodic
    tasks); delivery is handed over to the server's event loop. Each client
    has a bounded queue and a slow client loses messages instead of
    stalling the pipeline.
    """

    def __init__(self, queue_size: int = 100):
        self.queue_size = queue_size
        self._clients: Set[_Client] = set()
        self._clients_lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self.published = 0
        self.dropped = 0

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    @property
    def client_count(self) -> int:
        with self._clients_lock:
            return len(self._clients)

    # ---------- Publishing ----------
    def publish(self, channel: str, data: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed() or not self.client_count:
            return
        message = {"type": channel, "data": data}
        self.published += 1
        loop.call_soon_threadsafe(self._dispatch, message)

    def _dispatch(self, message: Dict[str, Any]) -> None:
        with self._clients_lock:
            clients = list(self._clients)
        for client in clients:
            if message["type"] not in client.channels:
                continue
            try:
                client.queue.put_nowait(message)
            except asyncio.QueueFull:
                client.dropped += 1
                self.dropped += 1

    # ---------- Connections ----------
    async def serve(self, websocket: WebSocket) -> None:
        await websocket.accept()
        client = _Client(websocket=websocket, queue=asyncio.Queue(maxsize=self.queue_size))
        with self._clients_lock:
            self._clients.add(client)
        logger.info("WebSocket client connected (total: %d)", self.client_count)

        await websocket.send_json(
            {"type": "welcome", "data": {"channels": list(CHANNELS), "subscribed": sorted(client.channels)}}
        )
        sender = asyncio.create_task(self._sender(client))
        try:
            while True:
                text = await websocket.receive_text()
                await self._handle_client_message(client, text)
        except WebSocketDisconnect:
            pass
        finally:
            sender.cancel()
            with self._clients_lock:
                self._clients.discard(client)
            logger.info(
                "WebSocket client disconnected (total: %d, dropped: %d)", self.client_count, client.dropped
            )

    async def _sender(self, client: _Client) -> None:
        while True:
            message = await client.queue.get()
            try:
                await client.websocket.send_json(message)
            except (WebSocketDisconnect, RuntimeError) as e:
                logger.debug("WebSocket send failed, stopping sender: %s", e)
                return

    async def _handle_client_message(self, client: _Client, text: str) -> None:
        try:
            msg = json.loads(text)
        except ValueError:
            await client.websocket.send_json({"type": "error", "data": {"message": "invalid JSON"}})
            return
        if not isinstance(msg, dict):
            return

        action = msg.get("type")
        requested = self._valid_channels(msg.get("channels") or [])
        match action:
            case "subscribe":
                client.channels |= requested
            case "unsubscribe":
                client.channels -= requested
            case _:
                await client.websocket.send_json(
                    {"type": "error", "data": {"message": f"unknown message type {action!r}"}}
                )
                return
        await client.websocket.send_json({"type": "subscribed", "data": {"channels": sorted(client.channels)}})

    @staticmethod
    def _valid_channels(channels: Iterable[Any]) -> Set[str]:
        return {c for c in channels if c in CHANNELS}
