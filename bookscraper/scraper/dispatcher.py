"""任务分发器。

对消息总线的薄封装：每次发布恰好调用一次总线发送原语，
失败直接抛给调用方，不做缓冲与重试。
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from loguru import logger

from ..core.metrics import MESSAGES_PUBLISHED
from .router import channel_for

if TYPE_CHECKING:
    from ..core.bus import MessageBus
    from .tasks import TaskMessage


class TaskDispatcher:
    """将任务消息发布到对应通道。

    Attributes:
        bus: 消息总线实例
    """

    def __init__(self, bus: MessageBus):
        self.bus = bus

    async def publish(self, channel: str, payload: dict[str, Any]) -> str:
        message_id = await self.bus.publish(channel, payload)
        MESSAGES_PUBLISHED.labels(channel=channel, delayed="false").inc()
        logger.trace("Published {} to {}", message_id, channel)
        return message_id

    async def dispatch(self, task: TaskMessage) -> str:
        """按任务类型发布到对应通道。"""
        return await self.publish(channel_for(task), task.to_payload())

    async def dispatch_later(self, task: TaskMessage, delay_seconds: float) -> None:
        """登记延迟发布，到期后由调度器的释放循环投递。"""
        channel = channel_for(task)
        await self.bus.publish_delayed(channel, task.to_payload(), delay_seconds)
        MESSAGES_PUBLISHED.labels(channel=channel, delayed="true").inc()
