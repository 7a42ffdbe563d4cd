"""任务消息定义模块。

该模块定义了流水线中在消息总线上传递的各类任务消息及其通道。
消息一经创建不可修改，线上格式使用 camelCase 字段名。
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..models import PriceUpdateStatus, now_with_tz


class Channel(StrEnum):
    """消息通道名称。"""

    LIST_CRAWL = "crawl-product-list"
    DETAIL_CRAWL = "crawl-product-detail"
    PRICE_CRAWL = "price.update"
    PRICE_RESULT = "price.update.result"


class TaskMessage(BaseModel):
    """任务消息基类。"""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True, extra="ignore")

    timestamp: datetime = Field(default_factory=now_with_tz)

    def to_payload(self) -> dict[str, Any]:
        """转换为线上格式的 JSON 对象。"""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]):
        return cls.model_validate(payload)


class ListCrawlTask(TaskMessage):
    """列表抓取任务。

    Attributes:
        job_id: 任务ID
        type: 任务类型标记，消费方只处理 LIST_CRAWL
    """

    job_id: str
    type: str = "LIST_CRAWL"


class DetailCrawlTask(TaskMessage):
    """详情抓取任务。

    Attributes:
        item_id: 平台商品ID
        job_id: 来源任务ID
        source: 数据来源
        retry_count: 已重试次数
    """

    item_id: int
    job_id: str
    source: str
    retry_count: int = 0


class PriceCrawlTask(TaskMessage):
    """价格抓取任务。

    Attributes:
        item_id: 图书ID
        external_id: 平台商品ID
        source: 数据来源
        job_id: 价格更新任务ID
        retry_count: 已重试次数
    """

    item_id: int
    external_id: str
    source: str
    job_id: str
    retry_count: int = 0


class PriceCrawlResult(TaskMessage):
    """价格抓取结果。

    Attributes:
        item_id: 图书ID
        external_id: 平台商品ID
        source: 数据来源
        job_id: 价格更新任务ID
        new_price: 当前售价，失败时为 0
        original_price: 原价，失败时为 0
        status: SUCCESS 或 FAILED
        error_message: 失败原因
    """

    item_id: int
    external_id: str
    source: str
    job_id: str
    new_price: float = 0
    original_price: float = 0
    status: PriceUpdateStatus
    error_message: str | None = None


type AnyTask = ListCrawlTask | DetailCrawlTask | PriceCrawlTask | PriceCrawlResult
