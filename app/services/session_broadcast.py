"""
Session events shared across workers through a Redis pub/sub channel.

Sign-in publishes ``session_terminated`` on ``SESSION_CHANNEL``. Every
process serving websockets runs one listener task that subscribes to the
channel and hands each event to the local queues of that user's sockets.
"""

import asyncio
import json
import logging
from collections import defaultdict

import redis
import redis.asyncio as aioredis

from app.config import settings

logger = logging.getLogger(__name__)

SESSION_CHANNEL = "session_updates"
SESSION_TERMINATED = "session_terminated"
DEFAULT_REDIS_URL = "redis://localhost:6379/0"


class SessionBroadcaster:
    def __init__(self, channel: str = SESSION_CHANNEL, max_queue_size: int = 16):
        self.channel = channel
        self.max_queue_size = max_queue_size
        self._subscribers: dict[int, set[asyncio.Queue]] = defaultdict(set)
        self._redis = None
        self._async_redis = None
        self._listener: asyncio.Task | None = None
        self._listener_loop: asyncio.AbstractEventLoop | None = None
        self._ready: asyncio.Future | None = None

    def configure(self, sync_client, async_client) -> None:
        """Swap the Redis clients (publisher and subscriber side)."""
        self._redis = sync_client
        self._async_redis = async_client

    def _publisher(self):
        if self._redis is None:
            self._redis = redis.from_url(settings.REDIS_URL or DEFAULT_REDIS_URL, decode_responses=True)
        return self._redis

    def _subscriber_client(self):
        if self._async_redis is None:
            self._async_redis = aioredis.from_url(settings.REDIS_URL or DEFAULT_REDIS_URL, decode_responses=True)
        return self._async_redis

    def publish_session_terminated(self, user_id: int) -> int:
        """Publish the event; returns how many listening processes received it."""
        event = {"event": SESSION_TERMINATED, "userId": user_id}
        try:
            receivers = self._publisher().publish(self.channel, json.dumps(event))
        except redis.RedisError:
            logger.exception("Could not publish %s for user_id=%s", SESSION_TERMINATED, user_id)
            return 0
        logger.info("Published %s for user_id=%s to %s listeners", SESSION_TERMINATED, user_id, receivers)
        return receivers

    async def subscribe(self, user_id: int) -> asyncio.Queue:
        """Register a local queue for ``user_id``; raises ``redis.RedisError`` if the channel is unreachable."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers[user_id].add(queue)
        try:
            await self._ensure_listener()
        except BaseException:
            self.unsubscribe(user_id, queue)
            raise
        return queue

    def unsubscribe(self, user_id: int, queue: asyncio.Queue) -> None:
        entries = self._subscribers.get(user_id)
        if entries is not None:
            entries.discard(queue)
            if not entries:
                self._subscribers.pop(user_id, None)
        if not self._subscribers and self._listener and not self._listener.done():
            self._listener.cancel()
            self._listener = None

    def subscriber_count(self, user_id: int) -> int:
        return len(self._subscribers.get(user_id, ()))

    def _ensure_listener(self) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        stale = self._listener is None or self._listener.done() or self._listener_loop is not loop
        if stale:
            self._ready = loop.create_future()
            self._listener_loop = loop
            self._listener = asyncio.create_task(self._listen(self._ready))
        return asyncio.shield(self._ready)

    async def _listen(self, ready: asyncio.Future) -> None:
        pubsub = self._subscriber_client().pubsub()
        try:
            await pubsub.subscribe(self.channel)
        except redis.RedisError as exc:
            logger.error("Could not subscribe to %s: %s", self.channel, exc)
            ready.set_exception(exc)
            await pubsub.aclose()
            return
        ready.set_result(True)
        logger.info("Listening for session events on %s", self.channel)
        try:
            async for message in pubsub.listen():
                if message.get("type") != "message":
                    continue
                self._dispatch(message.get("data"))
        except redis.RedisError:
            logger.exception("Session event listener on %s stopped", self.channel)
        finally:
            try:
                await pubsub.unsubscribe(self.channel)
            except redis.RedisError as exc:
                logger.warning("Could not unsubscribe from %s: %s", self.channel, exc)
            await pubsub.aclose()

    def _dispatch(self, raw) -> None:
        try:
            event = json.loads(raw)
            user_id = int(event["userId"])
        except (TypeError, ValueError, KeyError):
            logger.warning("Ignoring malformed session event: %r", raw)
            return
        for queue in list(self._subscribers.get(user_id, ())):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Dropping session event for user_id=%s; subscriber queue full", user_id)


session_broadcaster = SessionBroadcaster()
