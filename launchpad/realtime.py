"""
Realtime observer channel.

Each WebSocket observer gets the current log snapshot on connect, then every
new entry as it is appended. Observers may send terminal input for the
supervised process or ask for the log history to be cleared.

Wire format (JSON text frames):
    server -> client  {"type": "log-history", "entries": [...]}
                      {"type": "log-message", "entry": {...}}
    client -> server  {"type": "terminal-input", "data": "<line>"}
                      {"type": "clear-history"}
"""

import asyncio
import json
import logging

from fastapi import WebSocket, WebSocketDisconnect

from .errors import NotRunning
from .logbuffer import LogBuffer, LogEntry
from .process import ProcessSupervisor

logger = logging.getLogger(__name__)


def history_message(entries: list[LogEntry]) -> dict:
    return {"type": "log-history", "entries": [e.to_dict() for e in entries]}


class ObserverHub:
    """Bridges the thread-safe log buffer to WebSocket observers."""

    def __init__(self, logs: LogBuffer, supervisor: ProcessSupervisor):
        self.logs = logs
        self.supervisor = supervisor
        self._connections: set[WebSocket] = set()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def serve(self, websocket: WebSocket):
        """Run one observer connection until the client goes away."""
        await websocket.accept()
        loop = asyncio.get_running_loop()
        outbox: asyncio.Queue = asyncio.Queue()

        # Buffer callbacks fire on producer threads; hop onto the loop.
        def on_entry(entry: LogEntry):
            loop.call_soon_threadsafe(
                outbox.put_nowait, {"type": "log-message", "entry": entry.to_dict()}
            )

        def on_reset(entries: list[LogEntry]):
            loop.call_soon_threadsafe(outbox.put_nowait, history_message(entries))

        snapshot = self.logs.subscribe(on_entry, on_reset)
        self._connections.add(websocket)
        logger.info(f"Observer connected. Active observers: {len(self._connections)}")

        sender = asyncio.create_task(self._send_loop(websocket, outbox, snapshot))
        try:
            while True:
                raw = await websocket.receive_text()
                await self.handle_message(raw)
        except WebSocketDisconnect:
            pass
        finally:
            self.logs.unsubscribe(on_entry)
            self._connections.discard(websocket)
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)
            logger.info(f"Observer disconnected. Active observers: {len(self._connections)}")

    async def handle_message(self, raw: str):
        try:
            message = json.loads(raw)
        except json.JSONDecodeError:
            logger.debug("Ignoring non-JSON observer message")
            return
        if not isinstance(message, dict):
            return

        msg_type = message.get("type")
        if msg_type == "terminal-input":
            line = str(message.get("data", ""))
            try:
                await asyncio.to_thread(self.supervisor.write_input, line)
            except NotRunning as e:
                self.logs.append("warn", str(e))
        elif msg_type == "clear-history":
            self.logs.clear()
        else:
            logger.debug(f"Ignoring unknown observer message type: {msg_type}")

    async def _send_loop(self, websocket: WebSocket, outbox: asyncio.Queue, snapshot: list[LogEntry]):
        try:
            await websocket.send_json(history_message(snapshot))
            while True:
                message = await outbox.get()
                await websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError) as e:
            logger.debug(f"Observer send loop ended: {e}")
