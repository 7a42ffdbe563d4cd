"""数据模型定义模块。

该模块定义了流水线使用的 SQLAlchemy ORM 模型：
任务记录（Job）、图书目录行（Book）、作者（Author）与价格历史（PriceHistory），
以及相关的状态枚举。
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import StrEnum

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Identity,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

Base = declarative_base()


__all__ = [
    "Author",
    "Base",
    "Book",
    "Job",
    "JobStatus",
    "JobType",
    "PriceHistory",
    "PriceUpdateStatus",
    "now_with_tz",
]


def now_with_tz() -> datetime:
    """返回带时区的当前时间。

    Returns:
        datetime: UTC 时区的当前时间。
    """
    return datetime.now(UTC)


class JobStatus(StrEnum):
    """任务状态。只允许 PENDING→PROCESSING→{COMPLETED, FAILED} 以及取消时的 PENDING→FAILED。"""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class JobType(StrEnum):
    """任务类型"""

    LIST_CRAWL = "LIST_CRAWL"
    PRICE_UPDATE = "PRICE_UPDATE"
    MANUAL_PRICE_UPDATE = "MANUAL_PRICE_UPDATE"
    DETAIL_RECRAWL = "DETAIL_RECRAWL"


class PriceUpdateStatus(StrEnum):
    """价格抓取结果状态"""

    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


def _enum_column[E: StrEnum](enum_cls: type[E]) -> SAEnum:
    return SAEnum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


class _DictMixin:
    def to_dict(self) -> dict:
        result = {}
        for c in self.__table__.columns:  # type: ignore[attr-defined]
            value = getattr(self, c.key)
            if value is not None:
                result[c.key] = value
        return result


class Job(_DictMixin, Base):
    """任务生命周期记录。

    Attributes:
        id: 任务ID（UUID）
        type: 任务类型
        status: 任务状态
        crawled: 已处理（已抓取/已投递）数量
        total: 预期总量
        succeeded: 成功数量（列表抓取为新增图书数，价格任务为成功更新数）
        duplicates: 已存在并被更新的数量
        errors: 失败数量
        percent: 进度百分比，0..100
        error_message: 失败原因
        created_at: 创建时间
        updated_at: 最近更新时间
        started_at: 开始执行时间
        completed_at: 结束时间（完成或失败）
    """

    __tablename__ = "job"
    __table_args__ = (
        Index("idx_job_status_created", "status", "created_at"),
        Index("idx_job_type_created", "type", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    type: Mapped[JobType] = mapped_column(_enum_column(JobType), nullable=False)
    status: Mapped[JobStatus] = mapped_column(_enum_column(JobStatus), nullable=False, default=JobStatus.PENDING)
    crawled: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    succeeded: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    duplicates: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    errors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    percent: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_with_tz)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=now_with_tz, onupdate=now_with_tz
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Book(_DictMixin, Base):
    """图书目录行。

    以 ``(external_id, source)`` 作为自然键，由列表爬虫创建，
    由详情爬虫与价格更新消费者修改，核心流程从不删除。

    Attributes:
        id: 内部自增ID
        external_id: 平台商品ID
        source: 数据来源
        title: 书名
        description: 简介
        original_price: 原价
        promotional_price: 促销价
        quantity_sold: 销量
        image: 封面图链接
        author_ids: 作者ID列表
        is_from_crawler: 是否由爬虫写入
        is_deleted: 软删除标记
        needs_detail_crawl: 是否仍需抓取详情
        detail_crawl_attempts: 详情抓取尝试次数
        last_detail_crawl_at: 最近一次详情抓取时间
        last_detail_crawl_error: 最近一次详情抓取错误
        detail_crawl_success: 最近一次详情抓取是否成功
        detail_crawl_permanently_failed: 是否已放弃详情抓取
    """

    __tablename__ = "book"
    __table_args__ = (
        UniqueConstraint("external_id", "source", name="uq_book_external_source"),
        Index("idx_book_needs_detail", "needs_detail_crawl", "detail_crawl_permanently_failed"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    external_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    title: Mapped[str] = mapped_column(Text, nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    original_price: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    promotional_price: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    quantity_sold: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    image: Mapped[str | None] = mapped_column(Text, nullable=True)
    author_ids: Mapped[list[int]] = mapped_column(ARRAY(BigInteger), nullable=False, default=list)
    is_from_crawler: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    needs_detail_crawl: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    detail_crawl_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_detail_crawl_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_detail_crawl_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    detail_crawl_success: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    detail_crawl_permanently_failed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_with_tz)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=now_with_tz, onupdate=now_with_tz
    )


class Author(_DictMixin, Base):
    """作者。

    以 ``(external_id, source)`` 作为自然键，首次出现时惰性创建，不反向引用图书。
    """

    __tablename__ = "author"
    __table_args__ = (UniqueConstraint("external_id", "source", name="uq_author_external_source"),)

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    external_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    slug: Mapped[str] = mapped_column(Text, nullable=False, default="")
    is_from_crawler: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_with_tz)


class PriceHistory(_DictMixin, Base):
    """价格历史记录（只追加）。

    Attributes:
        book_id: 图书ID
        external_id: 平台商品ID
        source: 数据来源
        original_price: 原价
        promotional_price: 促销价
        price_change: 相对上一条 SUCCESS 记录的价格变化，无上一条时为 None
        price_change_percentage: 价格变化百分比（保留两位小数）
        recorded_at: 记录时间
        crawl_job_id: 产生该记录的任务ID
        status: SUCCESS 或 FAILED
        error_message: 失败原因
    """

    __tablename__ = "price_history"
    __table_args__ = (
        Index("idx_price_history_book_status_time", "book_id", "status", "recorded_at"),
        Index("idx_price_history_job_book", "crawl_job_id", "book_id"),
    )

    id: Mapped[int] = mapped_column(BigInteger, Identity(), primary_key=True)
    book_id: Mapped[int] = mapped_column(BigInteger, ForeignKey("book.id"), nullable=False)
    external_id: Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str] = mapped_column(String(32), nullable=False)
    original_price: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    promotional_price: Mapped[float] = mapped_column(Float, nullable=False, default=0)
    price_change: Mapped[float | None] = mapped_column(Float, nullable=True)
    price_change_percentage: Mapped[float | None] = mapped_column(Float, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=now_with_tz)
    crawl_job_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[PriceUpdateStatus] = mapped_column(_enum_column(PriceUpdateStatus), nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
