"""Command listener — Redis PubSub '<prefix>:cmd:*' -> CommandDispatcher.

Channel suffix is the command identifier:  deif:gc1f2:cmd:start_engine
Payload is free text, or JSON {"retained": true} when the message is a
replay of a stored command (bus bridges replay on reconnect). Replays are
handed to the dispatcher flagged, which drops them.

Messages go through an asyncio.Queue and are dispatched one at a time.
"""
from __future__ import annotations

import asyncio
import json
import logging

from redis.asyncio import Redis

from services.command_dispatcher import CommandDispatcher, DispatchResult

logger = logging.getLogger("gateway.command_listener")


def parse_command_message(channel: str | bytes, data: str | bytes, prefix: str) -> tuple[str, bool] | None:
    """Return (identifier, retained) or None if the channel is not a command channel."""
    if isinstance(channel, bytes):
        channel = channel.decode("utf-8")
    if isinstance(data, bytes):
        data = data.decode("utf-8", errors="replace")

    head = f"{prefix}:cmd:"
    if not channel.startswith(head):
        return None
    identifier = channel[len(head):]
    if not identifier:
        return None

    retained = False
    try:
        body = json.loads(data) if data else None
    except json.JSONDecodeError:
        body = None
    if isinstance(body, dict):
        retained = bool(body.get("retained", False))
    return identifier, retained


class CommandListener:

    def __init__(self, redis: Redis, dispatcher: CommandDispatcher, *, prefix: str, queue_size: int = 16):
        self.redis = redis
        self.dispatcher = dispatcher
        self.prefix = prefix
        self.queue: asyncio.Queue[tuple[str, bool]] = asyncio.Queue(maxsize=queue_size)
        self._running = False
        self._task: asyncio.Task | None = None

    @property
    def pattern(self) -> str:
        return f"{self.prefix}:cmd:*"

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.current_task()
        logger.info(
            "CommandListener started on %s (enabled: %s)",
            self.pattern, ", ".join(self.dispatcher.enabled_identifiers) or "none",
        )
        worker = asyncio.create_task(self._worker())
        try:
            await self._subscribe()
        finally:
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass

    async def stop(self) -> None:
        self._running = False
        # listen() blocks until the next message; cancel to unblock it
        if self._task is not None and not self._task.done():
            self._task.cancel()
        logger.info("CommandListener stopped")

    async def _subscribe(self) -> None:
        while self._running:
            pubsub = self.redis.pubsub()
            try:
                await pubsub.psubscribe(self.pattern)
                async for msg in pubsub.listen():
                    if not self._running:
                        break
                    if msg["type"] != "pmessage":
                        continue
                    parsed = parse_command_message(msg["channel"], msg["data"], self.prefix)
                    if parsed is None:
                        continue
                    try:
                        self.queue.put_nowait(parsed)
                    except asyncio.QueueFull:
                        logger.warning("Command queue full, dropping %s", parsed[0])
            except Exception as exc:
                if not self._running:
                    break
                logger.error("CommandListener subscribe error: %s, reconnecting in 2s", exc)
                await asyncio.sleep(2)
            finally:
                try:
                    await pubsub.punsubscribe(self.pattern)
                    await pubsub.close()
                except Exception:
                    pass

    async def _worker(self) -> None:
        while True:
            identifier, retained = await self.queue.get()
            try:
                await self.handle(identifier, retained)
            finally:
                self.queue.task_done()

    async def handle(self, identifier: str, retained: bool) -> DispatchResult:
        result = await self.dispatcher.dispatch(identifier, retained=retained)
        logger.debug("Command %s -> %s", identifier, result.status.value)
        return result
