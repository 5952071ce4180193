"""
Realtime broadcast channels.

Two transports share one interface: InProcessBroker for a single bot process
(and tests), RedisBroker for fan-out across processes via Redis pub/sub.
Channel keys are plain strings such as ``match:42`` or ``entity:challenges``.
"""

import asyncio
import inspect
import json
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from ladder.constants import ChannelConstants
from ladder.utils.logger import setup_logger
from ladder.utils.redis_utils import RedisUtils

logger = setup_logger(__name__)

MessageHandler = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


def match_channel(challenge_id: int) -> str:
    return f"{ChannelConstants.MATCH_CHANNEL_PREFIX}{challenge_id}"


def entity_channel(table: str) -> str:
    return f"{ChannelConstants.ENTITY_CHANNEL_PREFIX}{table}"


class Subscription:
    """Handle returned by subscribe(); call unsubscribe() to stop delivery."""

    def __init__(self, broker: 'RealtimeBroker', channel_key: str, handler: MessageHandler):
        self.broker = broker
        self.channel_key = channel_key
        self.handler = handler
        self.active = True

    async def unsubscribe(self):
        if self.active:
            self.active = False
            await self.broker._remove_handler(self.channel_key, self.handler)


class RealtimeBroker(ABC):
    """Publish/subscribe over named channels carrying JSON-able dict payloads."""

    def __init__(self):
        self._handlers: Dict[str, List[MessageHandler]] = {}

    async def subscribe(self, channel_key: str, on_message: MessageHandler) -> Subscription:
        first = channel_key not in self._handlers
        self._handlers.setdefault(channel_key, []).append(on_message)
        if first:
            await self._on_first_subscriber(channel_key)
        logger.debug(f"Subscribed to {channel_key}")
        return Subscription(self, channel_key, on_message)

    async def subscribe_to_entity_changes(self, table: str, on_change: MessageHandler) -> Subscription:
        return await self.subscribe(entity_channel(table), on_change)

    async def publish_entity_change(self, table: str, op: str, record: Dict[str, Any]) -> None:
        await self.publish(entity_channel(table), {'table': table, 'op': op, 'record': record})

    @abstractmethod
    async def publish(self, channel_key: str, payload: Dict[str, Any]) -> None:
        ...

    async def close(self) -> None:
        self._handlers.clear()

    async def _remove_handler(self, channel_key: str, handler: MessageHandler):
        handlers = self._handlers.get(channel_key)
        if not handlers:
            return
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            del self._handlers[channel_key]
            await self._on_last_unsubscribe(channel_key)
        logger.debug(f"Unsubscribed from {channel_key}")

    async def _on_first_subscriber(self, channel_key: str) -> None:
        pass

    async def _on_last_unsubscribe(self, channel_key: str) -> None:
        pass

    async def _dispatch(self, channel_key: str, payload: Dict[str, Any]) -> None:
        """Deliver to each handler in subscription order; one failing handler doesn't stop the rest"""
        for handler in list(self._handlers.get(channel_key, ())):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Handler for {channel_key} failed: {e}", exc_info=True)

    def subscriber_count(self, channel_key: str) -> int:
        return len(self._handlers.get(channel_key, ()))


class InProcessBroker(RealtimeBroker):
    """Delivers messages to subscribers in the same process, synchronously with publish()"""

    async def publish(self, channel_key: str, payload: Dict[str, Any]) -> None:
        # Round-trip through JSON so subscribers never share the publisher's dict
        await self._dispatch(channel_key, json.loads(json.dumps(payload, default=str)))


class RedisBroker(RealtimeBroker):
    """Redis pub/sub transport for running several bot or worker processes"""

    def __init__(self, client):
        super().__init__()
        self.client = client
        self._pubsub = client.pubsub(ignore_subscribe_messages=True)
        self._reader: Optional[asyncio.Task] = None

    async def publish(self, channel_key: str, payload: Dict[str, Any]) -> None:
        await self.client.publish(channel_key, json.dumps(payload, default=str))

    async def _on_first_subscriber(self, channel_key: str) -> None:
        await self._pubsub.subscribe(channel_key)
        if self._reader is None or self._reader.done():
            self._reader = asyncio.create_task(self._read_loop())

    async def _on_last_unsubscribe(self, channel_key: str) -> None:
        await self._pubsub.unsubscribe(channel_key)

    async def _read_loop(self):
        try:
            while True:
                message = await self._pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                if not message or message.get('type') != 'message':
                    continue

                channel = message['channel']
                if isinstance(channel, bytes):
                    channel = channel.decode()
                try:
                    payload = json.loads(message['data'])
                except (TypeError, ValueError):
                    logger.warning(f"Dropping malformed message on {channel}")
                    continue
                await self._dispatch(channel, payload)
        except Exception as e:
            logger.error(f"Redis reader stopped: {e}", exc_info=True)

    async def close(self) -> None:
        if self._reader:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        await self._pubsub.aclose()
        await self.client.aclose()
        await super().close()
        logger.info("Redis broker closed")


async def create_broker() -> RealtimeBroker:
    """RedisBroker when REDIS_URL is set and reachable, otherwise InProcessBroker"""
    client = await RedisUtils.create_redis_client()
    if client is None:
        logger.info("Using in-process realtime broker")
        return InProcessBroker()
    logger.info("Using Redis realtime broker")
    return RedisBroker(client)
