"""
redis_relay.py — Cross-process fan-out of the change feed via Redis pub/sub.

With several server processes, a write committed in process A must reach
channels held by process B. Each process:

    local publish ──▶ forwarder ──▶ PUBLISH <prefix>:<table> {origin, payload}
    PSUBSCRIBE <prefix>:* ──▶ drop own origin ──▶ feed.deliver(payload)

Loss of the Redis connection is a transport drop: every local channel is
disconnected (DISCONNECTED marker) and, once the subscription is back,
reconnected (RECONNECTED marker) so consumers resync. Reconnects back off
exponentially.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from backend.app.core.config import settings
from backend.app.relay.change_feed import ChangeFeed, to_wire
from backend.app.relay.models import generate_client_ref

logger = logging.getLogger(__name__)


class RedisFeedRelay:
    def __init__(
        self,
        feed: ChangeFeed,
        *,
        url: Optional[str] = None,
        prefix: Optional[str] = None,
        client: Any = None,
        backoff_base_seconds: float = 0.5,
        backoff_max_seconds: float = 30.0,
    ):
        self.feed = feed
        self.url = url or settings.REDIS_URL
        self.prefix = prefix or settings.CHANGEFEED_CHANNEL_PREFIX
        self.origin = generate_client_ref()
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self.connected = False
        self.received = 0
        self.published = 0
        self._redis_client = client
        self._task: Optional["asyncio.Task[None]"] = None
        self._stopping = False

    async def _get_redis(self):
        """Get or create the async Redis client."""
        if self._redis_client is None:
            import redis.asyncio as aioredis
            self._redis_client = aioredis.from_url(
                self.url,
                encoding="utf-8",
                decode_responses=True,
            )
            logger.info("Redis change relay using %s", self.url)
        return self._redis_client

    def topic(self, table: str) -> str:
        return f"{self.prefix}:{table}"

    # ── Lifecycle ──

    async def start(self) -> None:
        await self._get_redis()
        self._stopping = False
        self.feed.add_forwarder(self.publish)
        self._task = asyncio.create_task(self._listen())

    async def stop(self) -> None:
        self._stopping = True
        if self._task is not None:
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
        if self._redis_client is not None:
            await self._redis_client.aclose()
        self.connected = False

    # ── Outbound ──

    async def publish(self, payload: Dict[str, Any]) -> None:
        client = await self._get_redis()
        envelope = json.dumps({"origin": self.origin, "payload": to_wire(payload)})
        await client.publish(self.topic(payload["table"]), envelope)
        self.published += 1

    # ── Inbound ──

    def receive(self, data: Any) -> bool:
        """Deliver one pub/sub message locally. Returns False if dropped."""
        try:
            envelope = json.loads(data)
        except (TypeError, ValueError):
            logger.warning("Dropping undecodable relay message")
            return False
        if not isinstance(envelope, dict) or envelope.get("origin") == self.origin:
            return False
        payload = envelope.get("payload")
        if not isinstance(payload, dict):
            logger.warning("Dropping relay message without payload")
            return False
        self.received += 1
        self.feed.deliver(payload)
        return True

    async def _listen(self) -> None:
        attempt = 0
        while not self._stopping:
            client = await self._get_redis()
            pubsub = client.pubsub()
            try:
                await pubsub.psubscribe(f"{self.prefix}:*")
                if attempt:
                    self.feed.reconnect_all()
                    logger.info("Redis change relay reconnected after %d attempt(s)", attempt)
                self.connected = True
                attempt = 0
                async for message in pubsub.listen():
                    if message.get("type") == "pmessage":
                        self.receive(message.get("data"))
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                if self.connected or attempt == 0:
                    self.feed.disconnect_all()
                self.connected = False
                attempt += 1
                delay = min(
                    self.backoff_base_seconds * (2 ** (attempt - 1)),
                    self.backoff_max_seconds,
                )
                logger.warning(
                    "Redis change relay lost (%s); retrying in %.1fs", exc, delay,
                )
                await asyncio.sleep(delay)
            finally:
                await pubsub.aclose()

    def status(self) -> Dict[str, Any]:
        return {
            "connected": self.connected,
            "prefix": self.prefix,
            "published": self.published,
            "received": self.received,
        }
