"""消息总线模块。

提供统一的总线协议与两种实现：
- RedisStreamsBus: 每个通道对应一个 Redis Stream，使用消费者组实现至少一次投递；
  延迟消息写入 Redis 有序集合（score 为到期时间），由调度器周期性释放，进程重启后不丢失。
- MemoryBus: 进程内 asyncio 队列，用于单进程运行与测试，延迟消息不持久化。
"""

from __future__ import annotations

import asyncio
import dataclasses
import itertools
import time
import uuid
from collections import defaultdict
from typing import TYPE_CHECKING, Any, Protocol, cast

from loguru import logger
from redis.exceptions import ResponseError

from ..utils.serialization import dumps_payload, loads_payload

if TYPE_CHECKING:
    import redis.asyncio as redis

    from .config import BusConfig


@dataclasses.dataclass(slots=True, frozen=True)
class Delivery:
    """从总线读取到的一条消息。

    Attributes:
        channel: 通道名
        message_id: 总线分配的消息ID，用于确认
        payload: 已解码的消息体
    """

    channel: str
    message_id: str
    payload: dict[str, Any]


class MessageBus(Protocol):
    """消息总线协议。"""

    async def publish(self, channel: str, payload: dict[str, Any]) -> str:
        """发布一条消息，返回消息ID。失败时直接抛出异常，不做重试。"""
        ...

    async def publish_delayed(self, channel: str, payload: dict[str, Any], delay_seconds: float) -> None:
        """登记一条在 delay_seconds 之后才发布的消息。"""
        ...

    async def release_due(self, limit: int = 100) -> int:
        """发布所有已到期的延迟消息，返回发布数量。"""
        ...

    async def ensure_group(self, channel: str) -> None: ...

    async def read(
        self,
        channel: str,
        consumer: str,
        *,
        count: int,
        block_ms: int,
        pending: bool = False,
    ) -> list[Delivery]:
        """读取消息。

        Args:
            channel: 通道名。
            consumer: 消费者名称（同一消费者组内唯一）。
            count: 单次最多读取条数。
            block_ms: 没有新消息时的阻塞等待时间（毫秒）。
            pending: 为 True 时读取本消费者已领取但尚未确认的消息（崩溃恢复）。
        """
        ...

    async def ack(self, delivery: Delivery) -> None: ...

    async def close(self) -> None: ...


class RedisStreamsBus:
    """基于 Redis Streams 的消息总线。"""

    def __init__(self, redis_client: redis.Redis, *, bus_config: BusConfig):
        self.redis = redis_client
        self.stream_prefix = bus_config.stream_prefix
        self.group = bus_config.consumer_group
        self.maxlen = bus_config.max_len
        self.delayed_key = bus_config.delayed_key

    def stream_key(self, channel: str) -> str:
        return f"{self.stream_prefix}:{channel}"

    async def publish(self, channel: str, payload: dict[str, Any]) -> str:
        entry = {"data": dumps_payload(payload)}
        message_id = await self.redis.xadd(
            self.stream_key(channel),
            cast("Any", entry),
            maxlen=self.maxlen,
            approximate=True,
        )
        return message_id.decode() if isinstance(message_id, bytes) else str(message_id)

    async def publish_delayed(self, channel: str, payload: dict[str, Any], delay_seconds: float) -> None:
        # token 保证相同内容的多次登记互不覆盖
        member = dumps_payload({"channel": channel, "payload": payload, "token": uuid.uuid4().hex})
        due = time.time() + max(delay_seconds, 0.0)
        await self.redis.zadd(self.delayed_key, {member: due})

    async def release_due(self, limit: int = 100) -> int:
        now = time.time()
        members = await self.redis.zrangebyscore(self.delayed_key, "-inf", now, start=0, num=limit)
        released = 0
        for member in members:
            # ZREM 成功者获得发布权，多个调度进程并存时不会重复发布
            if not await self.redis.zrem(self.delayed_key, member):
                continue
            try:
                entry = loads_payload(member)
            except ValueError as e:
                logger.warning("Dropping malformed delayed entry: {}", e)
                continue
            try:
                await self.publish(entry["channel"], entry["payload"])
            except Exception:
                await self.redis.zadd(self.delayed_key, {member: now})
                raise
            released += 1
        return released

    async def ensure_group(self, channel: str) -> None:
        try:
            await self.redis.xgroup_create(self.stream_key(channel), self.group, id="0", mkstream=True)
            logger.info("Created consumer group {} on {}", self.group, self.stream_key(channel))
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def read(
        self,
        channel: str,
        consumer: str,
        *,
        count: int,
        block_ms: int,
        pending: bool = False,
    ) -> list[Delivery]:
        stream = self.stream_key(channel)
        response = await self.redis.xreadgroup(
            self.group,
            consumer,
            {stream: "0" if pending else ">"},
            count=count,
            block=None if pending else block_ms,
        )
        if isinstance(response, dict):
            response = list(response.items())

        deliveries: list[Delivery] = []
        for _stream, entries in response or []:
            for raw_id, fields in entries:
                message_id = raw_id.decode() if isinstance(raw_id, bytes) else str(raw_id)
                raw = None
                if fields:
                    raw = fields.get("data", fields.get(b"data"))
                if raw is None:
                    # 已被 XTRIM 裁掉的待确认消息
                    await self.redis.xack(stream, self.group, message_id)
                    continue
                try:
                    payload = loads_payload(raw)
                except ValueError as e:
                    logger.warning("Dropping undecodable message {} on {}: {}", message_id, channel, e)
                    await self.redis.xack(stream, self.group, message_id)
                    continue
                deliveries.append(Delivery(channel=channel, message_id=message_id, payload=payload))
        return deliveries

    async def ack(self, delivery: Delivery) -> None:
        await self.redis.xack(self.stream_key(delivery.channel), self.group, delivery.message_id)

    async def close(self) -> None:
        return


@dataclasses.dataclass(slots=True)
class DelayedMessage:
    channel: str
    payload: dict[str, Any]
    due: float
    delay_seconds: float


class MemoryBus:
    """基于 asyncio.Queue 的进程内消息总线。

    Attributes:
        published: 每个通道已发布的消息体（按发布顺序）
        delayed: 尚未到期的延迟消息
        acked: 已确认的消息ID
    """

    def __init__(self) -> None:
        self._queues: defaultdict[str, asyncio.Queue[Delivery]] = defaultdict(asyncio.Queue)
        self._seq = itertools.count(1)
        self.published: defaultdict[str, list[dict[str, Any]]] = defaultdict(list)
        self.delayed: list[DelayedMessage] = []
        self.acked: list[str] = []

    async def publish(self, channel: str, payload: dict[str, Any]) -> str:
        # 经过一次编解码，与线上传输保持一致
        payload = loads_payload(dumps_payload(payload))
        message_id = f"{next(self._seq)}-0"
        self.published[channel].append(payload)
        self._queues[channel].put_nowait(Delivery(channel=channel, message_id=message_id, payload=payload))
        return message_id

    async def publish_delayed(self, channel: str, payload: dict[str, Any], delay_seconds: float) -> None:
        payload = loads_payload(dumps_payload(payload))
        self.delayed.append(
            DelayedMessage(
                channel=channel,
                payload=payload,
                due=time.monotonic() + max(delay_seconds, 0.0),
                delay_seconds=delay_seconds,
            )
        )

    async def release_due(self, limit: int = 100, *, now: float | None = None) -> int:
        now = time.monotonic() if now is None else now
        due = [m for m in self.delayed if m.due <= now][:limit]
        for message in due:
            self.delayed.remove(message)
            await self.publish(message.channel, message.payload)
        return len(due)

    async def ensure_group(self, channel: str) -> None:
        self._queues[channel]  # noqa: B018

    async def read(
        self,
        channel: str,
        consumer: str,
        *,
        count: int,
        block_ms: int,
        pending: bool = False,
    ) -> list[Delivery]:
        if pending:
            return []
        queue = self._queues[channel]
        try:
            first = await asyncio.wait_for(queue.get(), timeout=block_ms / 1000)
        except TimeoutError:
            return []
        deliveries = [first]
        while len(deliveries) < count and not queue.empty():
            deliveries.append(queue.get_nowait())
        return deliveries

    async def ack(self, delivery: Delivery) -> None:
        self.acked.append(delivery.message_id)

    async def close(self) -> None:
        return
