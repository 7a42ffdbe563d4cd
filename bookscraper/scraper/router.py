"""通道路由。

任务消息类型与通道一一对应：

- crawl-product-list:   ``ListCrawlTask``
- crawl-product-detail: ``DetailCrawlTask``
- price.update:         ``PriceCrawlTask``
- price.update.result:  ``PriceCrawlResult``
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from .tasks import Channel, DetailCrawlTask, ListCrawlTask, PriceCrawlResult, PriceCrawlTask

if TYPE_CHECKING:
    from .tasks import AnyTask, TaskMessage

# task 类 → 通道名
_CHANNEL_MAP: dict[type[TaskMessage], Channel] = {
    ListCrawlTask: Channel.LIST_CRAWL,
    DetailCrawlTask: Channel.DETAIL_CRAWL,
    PriceCrawlTask: Channel.PRICE_CRAWL,
    PriceCrawlResult: Channel.PRICE_RESULT,
}

_TASK_MAP: dict[Channel, type[TaskMessage]] = {channel: cls for cls, channel in _CHANNEL_MAP.items()}


def channel_for(task: TaskMessage) -> Channel:
    """根据任务类型解析通道名。"""
    channel = _CHANNEL_MAP.get(type(task))
    if channel is None:
        raise ValueError(f"Unknown task type: {type(task).__name__}")
    return channel


def parse_task(channel: str, payload: dict[str, Any]) -> AnyTask:
    """将某通道上的消息体解析为对应的任务对象。

    Raises:
        ValueError: 未知通道或消息体校验失败。
    """
    try:
        task_cls = _TASK_MAP[Channel(channel)]
    except ValueError as e:
        raise ValueError(f"Unknown channel: {channel}") from e
    return task_cls.from_payload(payload)  # type: ignore[return-value]
