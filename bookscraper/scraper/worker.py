"""工作器模块。

每个 Worker 以消费者组成员的身份消费一个通道，把消息解析为任务对象后
交给通道对应的处理函数。处理函数返回或抛出异常后消息都会被确认，
重试由各处理函数自行通过延迟重发安排；进程在确认前崩溃或处理被取消时，
消息留在待确认列表中，重启后先于新消息被重新处理。
"""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, Any

from loguru import logger

from ..core.metrics import ACTIVE_WORKERS, TASK_DURATION, WORKER_ERRORS
from .router import parse_task
from .tasks import Channel

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from ..core.bus import Delivery, MessageBus
    from ..core.config import BusConfig
    from .services import Services

type Handler = Callable[[Any], Awaitable[Any]]


def build_handlers(services: Services) -> dict[Channel, Handler]:
    """通道 → 处理函数映射表。"""
    return {
        Channel.LIST_CRAWL: services.list_crawler.handle,
        Channel.DETAIL_CRAWL: services.detail_crawler.handle,
        Channel.PRICE_CRAWL: services.price_crawler.handle,
        Channel.PRICE_RESULT: services.price_consumer.handle,
    }


class Worker:
    """工作器类，负责消费单个通道上的任务。

    Attributes:
        worker_id: 工作器的唯一标识，同时作为消费者名称。
        channel: 消费的通道。
        bus: 消息总线实例。
        handler: 通道对应的处理函数。
        log: 日志记录器。
    """

    def __init__(self, worker_id: str, channel: Channel, bus: MessageBus, handler: Handler, config: BusConfig):
        self.worker_id = worker_id
        self.channel = channel
        self.bus = bus
        self.handler = handler
        self.read_count = config.read_count
        self.block_ms = config.block_ms
        self.log = logger.bind(name=f"Worker-{worker_id}")

    async def run(self):
        """工作器主循环。

        主要流程：
        1. 确保消费者组存在
        2. 先处理本消费者遗留的待确认消息（崩溃恢复）
        3. 持续读取新消息并逐条处理

        收到 CancelledError 时正常退出。
        """
        self.log.info("Starting on {}...", self.channel)
        ACTIVE_WORKERS.labels(channel=self.channel).inc()
        try:
            await self.bus.ensure_group(self.channel)
            await self.drain_pending()

            while True:
                try:
                    deliveries = await self.bus.read(
                        self.channel, self.worker_id, count=self.read_count, block_ms=self.block_ms
                    )
                    for delivery in deliveries:
                        await self.process(delivery)
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.log.exception("An unexpected error occurred in worker loop: {}", e)
                    await asyncio.sleep(1)
        except asyncio.CancelledError:
            self.log.info("Cancelled. Exiting.")
        finally:
            ACTIVE_WORKERS.labels(channel=self.channel).dec()

    async def drain_pending(self) -> int:
        """重新处理本消费者已领取但未确认的消息，返回处理数量。"""
        handled = 0
        while True:
            deliveries = await self.bus.read(
                self.channel, self.worker_id, count=self.read_count, block_ms=self.block_ms, pending=True
            )
            if not deliveries:
                break
            for delivery in deliveries:
                await self.process(delivery)
            handled += len(deliveries)
        if handled:
            self.log.info("Recovered {} pending messages", handled)
        return handled

    async def process(self, delivery: Delivery) -> None:
        """处理单条消息并确认。

        处理函数返回或抛出普通异常后确认；被取消时不确认，消息留在待确认列表中，
        由下次启动时的 drain_pending 重新处理。
        """
        try:
            task = parse_task(delivery.channel, delivery.payload)
        except ValueError as e:
            self.log.warning("Dropping invalid message {} on {}: {}", delivery.message_id, delivery.channel, e)
            await self.bus.ack(delivery)
            return

        start = time.perf_counter()
        try:
            await self.handler(task)
        except asyncio.CancelledError:
            self.log.warning("Cancelled while handling {}; leaving it pending", delivery.message_id)
            raise
        except Exception as e:
            WORKER_ERRORS.labels(channel=self.channel).inc()
            self.log.exception("Failed to handle {} {}: {}", type(task).__name__, delivery.message_id, e)
        finally:
            TASK_DURATION.labels(channel=self.channel).observe(time.perf_counter() - start)

        await self.bus.ack(delivery)
