"""
Live file status feed.

ConnectionManager holds one shared upstream connection (for example a
Postgres LISTEN channel) for any number of subscribers: the first
``acquire()`` connects, the last ``release()`` disconnects. Releasing the
same lease twice is a no-op.

FileStatusFeed fans ProgressUpdates out to subscriber queues and can be
passed straight to ``FileIngestionPipeline.process_file`` as ``on_progress``.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from .models import ProgressUpdate

logger = logging.getLogger(__name__)

ConnectHook = Callable[[], Awaitable[None]]


async def _noop() -> None:
    return None


class Lease:
    """One subscriber's hold on the shared connection."""

    def __init__(self, manager: "ConnectionManager"):
        self._manager = manager
        self.released = False

    async def release(self) -> None:
        if self.released:
            return
        self.released = True
        await self._manager._release()

    async def __aenter__(self) -> "Lease":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.release()


class ConnectionManager:
    """
    Usage:
        manager = ConnectionManager(connect=open_channel, disconnect=close_channel)
        async with await manager.acquire():
            ...
    """

    def __init__(self, connect: ConnectHook = _noop, disconnect: ConnectHook = _noop):
        self._connect = connect
        self._disconnect = disconnect
        self._lock = asyncio.Lock()
        self._count = 0

    @property
    def active(self) -> int:
        return self._count

    @property
    def connected(self) -> bool:
        return self._count > 0

    async def acquire(self) -> Lease:
        async with self._lock:
            if self._count == 0:
                await self._connect()
                logger.info("Feed connected")
            self._count += 1
            return Lease(self)

    async def _release(self) -> None:
        async with self._lock:
            if self._count == 0:
                return
            self._count -= 1
            if self._count == 0:
                try:
                    await self._disconnect()
                finally:
                    logger.info("Feed disconnected")


class Subscription:
    def __init__(self, feed: "FileStatusFeed", lease: Lease, file_id: Optional[str]):
        self._feed = feed
        self._lease = lease
        self.file_id = file_id
        self.queue: asyncio.Queue = asyncio.Queue()

    async def get(self, timeout: Optional[float] = None) -> ProgressUpdate:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout=timeout)

    async def close(self) -> None:
        self._feed._subscriptions.discard(self)
        await self._lease.release()

    async def __aenter__(self) -> "Subscription":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class FileStatusFeed:
    """Fan-out of ingestion progress to live subscribers."""

    def __init__(self, manager: Optional[ConnectionManager] = None):
        self.manager = manager or ConnectionManager()
        self._subscriptions: set[Subscription] = set()

    async def subscribe(self, file_id: Optional[str] = None) -> Subscription:
        """Subscribe to all updates, or to one file's updates."""
        lease = await self.manager.acquire()
        subscription = Subscription(self, lease, file_id)
        self._subscriptions.add(subscription)
        return subscription

    def publish(self, update: ProgressUpdate) -> None:
        for subscription in list(self._subscriptions):
            if subscription.file_id is None or subscription.file_id == update.file_id:
                subscription.queue.put_nowait(update)

    def __call__(self, update: ProgressUpdate) -> None:
        self.publish(update)
