# ami_service/channel_groups.py

import asyncio
from typing import Any, Dict, Iterable, List, Optional, Protocol, Set, Union

from config.app_config import app_config
from common.logger_setup import setup_logger
from common.redis_client import RedisClient
from ami_service.ami_events import ChannelGroup

logger = setup_logger(__name__, level_str=app_config.LOG_LEVEL)

GroupName = Union[ChannelGroup, str]


def _group_value(group: GroupName) -> str:
    # Raises ValueError for anything that is not 'calls' or 'system'
    return ChannelGroup(group).value


class EventSink(Protocol):
    def publish(self, group: GroupName, event_name: str, payload: Dict[str, Any]) -> None: ...


class GroupSubscription:
    """One subscriber's membership in a channel group, backed by a bounded queue."""

    def __init__(self, hub: "ChannelGroupHub", group: str, maxsize: int):
        self.hub = hub
        self.group = group
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def offer(self, message: Dict[str, Any]) -> bool:
        try:
            self.queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            return False

    async def get(self) -> Dict[str, Any]:
        return await self.queue.get()

    def close(self):
        self.hub.unsubscribe(self)


class ChannelGroupHub:
    """
    In-process fan-out of relayed AMI events to the members of a channel group.

    publish() never waits: each member has its own bounded queue and a member
    whose queue is full simply misses that message. Members joining later get
    nothing that was published before they joined.
    """

    def __init__(self, subscriber_queue_size: Optional[int] = None):
        self.subscriber_queue_size = subscriber_queue_size or app_config.WS_SUBSCRIBER_QUEUE_SIZE
        self._members: Dict[str, Set[GroupSubscription]] = {g.value: set() for g in ChannelGroup}

    def subscribe(self, group: GroupName) -> GroupSubscription:
        name = _group_value(group)
        subscription = GroupSubscription(self, name, self.subscriber_queue_size)
        self._members[name].add(subscription)
        logger.debug(f"Subscriber joined group '{name}'. Members: {len(self._members[name])}")
        return subscription

    def unsubscribe(self, subscription: GroupSubscription):
        self._members.get(subscription.group, set()).discard(subscription)
        logger.debug(f"Subscriber left group '{subscription.group}'.")

    def member_count(self, group: GroupName) -> int:
        return len(self._members[_group_value(group)])

    def publish(self, group: GroupName, event_name: str, payload: Dict[str, Any]) -> None:
        name = _group_value(group)
        message = {"event": event_name, "payload": payload}
        for subscription in list(self._members[name]):
            if not subscription.offer(message):
                logger.warning(f"Subscriber queue full in group '{name}'; dropped '{event_name}' "
                               f"(dropped so far: {subscription.dropped}).")


class RedisGroupPublisher:
    """Mirrors channel group messages onto Redis pub/sub channels '<prefix>:<group>'."""

    def __init__(self, redis_client: RedisClient, prefix: Optional[str] = None, maxsize: int = 1000):
        self.redis_client = redis_client
        self.prefix = prefix or app_config.REDIS_EVENTS_PREFIX
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._drain_task: Optional[asyncio.Task] = None

    def channel_for(self, group: GroupName) -> str:
        return f"{self.prefix}:{_group_value(group)}"

    def start(self):
        if self._drain_task is None or self._drain_task.done():
            self._drain_task = asyncio.create_task(self._drain(), name="redis-group-publisher")

    def publish(self, group: GroupName, event_name: str, payload: Dict[str, Any]) -> None:
        try:
            self._queue.put_nowait((self.channel_for(group), {"event": event_name, "payload": payload}))
        except asyncio.QueueFull:
            logger.warning(f"Redis publish backlog full; dropped '{event_name}' for group '{group}'.")

    async def _drain(self):
        while True:
            channel, message = await self._queue.get()
            try:
                if not await self.redis_client.publish_event(channel, message):
                    logger.debug(f"Redis mirror did not publish '{message['event']}' to {channel}.")
            except Exception as e:
                logger.error(f"Unexpected error mirroring event to Redis channel {channel}: {e}", exc_info=True)

    async def stop(self):
        if self._drain_task and not self._drain_task.done():
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                logger.info("Redis group publisher stopped.")
        self._drain_task = None


class FanOutSink:
    """Publishes to several sinks; one failing sink does not affect the rest."""

    def __init__(self, sinks: Iterable[EventSink]):
        self.sinks: List[EventSink] = list(sinks)

    def publish(self, group: GroupName, event_name: str, payload: Dict[str, Any]) -> None:
        for sink in self.sinks:
            try:
                sink.publish(group, event_name, payload)
            except Exception as e:
                logger.error(f"Sink {type(sink).__name__} failed to publish '{event_name}': {e}", exc_info=True)
