"""Ingestion scheduler: one listen task per channel, one bounded queue.

Every channel's ``listen`` loop runs as its own asyncio task and writes
into a shared DeliverySink.  The sink is the only state shared between
tasks.  Closing it is the cooperative shutdown signal: ``put`` starts
returning False and each listen loop returns on its own.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import config
from channels.base import Channel, ChannelMessage, ChannelRegistry

log = logging.getLogger(__name__)

MessageHandler = Callable[[ChannelMessage], Awaitable[Any]]


class DeliverySink:
    """Bounded, closable multi-producer / single-consumer message queue."""

    def __init__(self, maxsize: int = 100):
        self._queue: asyncio.Queue[ChannelMessage] = asyncio.Queue(maxsize=maxsize)
        self._closed = asyncio.Event()

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def close(self) -> None:
        """Signal producers and the consumer to stop."""
        self._closed.set()

    def qsize(self) -> int:
        return self._queue.qsize()

    async def guard(self, aw: Awaitable[Any]) -> tuple[bool, Any]:
        """Await ``aw`` unless the sink closes first.

        Returns ``(True, result)`` when ``aw`` finished, ``(False, None)``
        when the sink was closed before it could.
        """
        if self.closed:
            if asyncio.iscoroutine(aw):
                aw.close()
            return False, None

        task = asyncio.ensure_future(aw)
        closer = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({task, closer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            closer.cancel()
            if not task.done():
                task.cancel()

        if task.done() and not task.cancelled():
            return True, task.result()
        return False, None

    async def put(self, message: ChannelMessage) -> bool:
        """Enqueue ``message``, waiting for space. False means: stop listening."""
        if self.closed:
            return False
        try:
            self._queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            pass
        delivered, _ = await self.guard(self._queue.put(message))
        return delivered

    async def get(self) -> ChannelMessage | None:
        """Next message, or None once the sink is closed."""
        if self.closed:
            return None
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            pass
        received, message = await self.guard(self._queue.get())
        return message if received else None

    async def wait_closed(self, timeout: float | None = None) -> bool:
        """Sleep up to ``timeout`` seconds; True as soon as the sink closes."""
        try:
            await asyncio.wait_for(self._closed.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True


class IngestionScheduler:
    """Runs every registered channel's listen loop concurrently."""

    def __init__(
        self,
        registry: ChannelRegistry,
        *,
        queue_size: int | None = None,
        logger: logging.Logger | None = None,
    ):
        self.registry = registry
        self.sink = DeliverySink(queue_size or config.DELIVERY_QUEUE_SIZE)
        self.log = logger or log
        self._tasks: dict[str, asyncio.Task] = {}
        self._failures: dict[str, str] = {}

    def start(self) -> None:
        """Spawn one listen task per registered channel (idempotent)."""
        if self._tasks:
            return
        for entry in self.registry.entries():
            self._tasks[entry.name] = asyncio.create_task(
                self._run_listener(entry.channel), name=f"listen:{entry.name}",
            )
        self.log.info(
            "Ingestion started for %d channel(s): %s",
            len(self._tasks), ", ".join(self._tasks) or "(none)",
        )

    async def _run_listener(self, channel: Channel) -> None:
        try:
            await channel.listen(self.sink)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self._failures[channel.name] = f"{type(exc).__name__}: {exc}"
            self.log.error(
                "Channel %s listen loop failed; it stays down until restart",
                channel.name, exc_info=True,
            )
            return
        self.log.info("Channel %s stopped listening", channel.name)

    def status(self) -> dict[str, str]:
        """Per-channel state: running | stopped | failed: <reason>."""
        result: dict[str, str] = {}
        for name, task in self._tasks.items():
            if not task.done():
                result[name] = "running"
            elif name in self._failures:
                result[name] = f"failed: {self._failures[name]}"
            else:
                result[name] = "stopped"
        return result

    async def stop(self, grace: float | None = None) -> None:
        """Close the sink, give listeners ``grace`` seconds, then cancel."""
        self.sink.close()
        tasks = [task for task in self._tasks.values() if not task.done()]
        if not tasks:
            return

        timeout = config.SHUTDOWN_GRACE_SECONDS if grace is None else grace
        _done, pending = await asyncio.wait(tasks, timeout=timeout)
        if pending:
            self.log.warning(
                "Cancelling %d listener(s) that ignored shutdown: %s",
                len(pending), ", ".join(task.get_name() for task in pending),
            )
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

    async def run(self, handler: MessageHandler) -> None:
        """Start listeners and feed every delivered message to ``handler``.

        Returns once the sink is closed.  Handler failures are logged and
        do not stop consumption.
        """
        self.start()
        try:
            while True:
                message = await self.sink.get()
                if message is None:
                    break
                try:
                    await handler(message)
                except Exception:
                    self.log.error(
                        "Dispatcher failed on %s message %s",
                        message.channel, message.id, exc_info=True,
                    )
        finally:
            await self.stop()
