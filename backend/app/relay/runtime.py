"""
runtime.py — Process-level wiring of feed, stores, dispatch bridge and the
optional Redis relay.

    RelayRuntime
      ├── feed          ChangeFeed (in-process)
      ├── stores        Stores (memory | sql), publishing to feed
      ├── bridge        DispatchBridge (deep link + optional webhook)
      └── redis_relay   RedisFeedRelay | None (CHANGEFEED_BACKEND=redis)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from backend.app.core.config import Settings, settings as default_settings
from backend.app.relay.change_feed import ChangeFeed
from backend.app.relay.dispatch import DeepLinkChannel, DispatchBridge, OutboundChannel, WebhookChannel
from backend.app.relay.redis_relay import RedisFeedRelay
from backend.app.relay.stores import Stores, build_stores

logger = logging.getLogger(__name__)


@dataclass
class RelayRuntime:
    feed: ChangeFeed
    stores: Stores
    bridge: DispatchBridge
    redis_relay: Optional[RedisFeedRelay] = None
    started: bool = False

    async def start(self) -> None:
        if self.started:
            return
        await self.stores.prepare()
        if self.redis_relay is not None:
            await self.redis_relay.start()
        self.started = True
        logger.info("Relay runtime started")

    async def stop(self) -> None:
        if not self.started:
            return
        if self.redis_relay is not None:
            await self.redis_relay.stop()
        await self.bridge.close()
        await self.stores.close()
        for name in self.feed.channel_names:
            self.feed.remove_channel(name)
        self.started = False
        logger.info("Relay runtime stopped")


def build_runtime(config: Optional[Settings] = None) -> RelayRuntime:
    config = config or default_settings
    feed = ChangeFeed(queue_size=config.CHANGEFEED_QUEUE_SIZE)
    stores = build_stores(feed, backend=config.STORE_BACKEND)

    channels: List[OutboundChannel] = [DeepLinkChannel()]
    if config.DISPATCH_WEBHOOK_URL:
        channels.append(WebhookChannel(
            config.DISPATCH_WEBHOOK_URL,
            timeout_seconds=config.DISPATCH_WEBHOOK_TIMEOUT_SECONDS,
        ))
    bridge = DispatchBridge(channels, concierge_number=config.CONCIERGE_WHATSAPP_NUMBER)

    redis_relay = None
    backend = config.CHANGEFEED_BACKEND.lower()
    if backend == "redis":
        redis_relay = RedisFeedRelay(
            feed, url=config.REDIS_URL, prefix=config.CHANGEFEED_CHANNEL_PREFIX,
        )
    elif backend != "memory":
        raise ValueError(f"Unknown CHANGEFEED_BACKEND: {backend}")

    return RelayRuntime(feed=feed, stores=stores, bridge=bridge, redis_relay=redis_relay)
