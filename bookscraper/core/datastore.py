"""数据存储层模块。

该模块定义流水线依赖的存储协议，并提供基于 PostgreSQL（SQLAlchemy 异步）的实现。
协议覆盖四类数据：任务记录、图书目录、作者、价格历史；
提供自然键 upsert、批量写入、服务端游标流式读取与事务性多写。
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Protocol

from loguru import logger
from sqlalchemy import func, literal_column, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import IntegrityError

from ..models import Author, Book, BookRef, Job, JobStatus, PriceHistory, PriceUpdateStatus, UpsertResult, now_with_tz
from .exceptions import DuplicateKeyError

if TYPE_CHECKING:
    import uuid
    from collections.abc import AsyncGenerator, AsyncIterator, Collection

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from ..models import JobType

# 列表爬虫 upsert 冲突时覆盖的字段，抓取状态字段保持不变
OVERVIEW_COLUMNS = ("title", "original_price", "promotional_price", "quantity_sold", "image", "is_from_crawler")

PRICE_ELIGIBLE = (
    Book.is_from_crawler.is_(True),
    Book.external_id.is_not(None),
    Book.source.is_not(None),
    Book.is_deleted.is_(False),
)


class PriceTransaction(Protocol):
    """价格更新事务内可用的操作。所有写入在事务提交时一并生效。"""

    async def lock_book(self, book_id: int) -> Book | None:
        """读取并锁定图书行，同一图书的并发事务在此串行化。"""
        ...

    async def latest_success(self, book_id: int) -> PriceHistory | None:
        """读取该图书最近一条 SUCCESS 价格记录。"""
        ...

    async def has_record(self, book_id: int, crawl_job_id: str) -> bool:
        """该任务是否已为该图书写入过价格记录（重复投递判断）。"""
        ...

    async def set_book_prices(self, book: Book, *, promotional_price: float, original_price: float) -> None: ...

    async def add_record(self, record: PriceHistory) -> None: ...


class Store(Protocol):
    """流水线依赖的存储协议。"""

    async def insert_job(self, job_type: JobType) -> Job: ...

    async def get_job(self, job_id: uuid.UUID) -> Job | None: ...

    async def update_job(
        self,
        job_id: uuid.UUID,
        values: dict[str, Any],
        *,
        statuses: Collection[JobStatus] | None = None,
    ) -> Job | None:
        """条件更新任务记录。

        Args:
            job_id: 任务ID。
            values: 需要写入的字段。
            statuses: 允许更新的当前状态集合；为 None 时不限制。

        Returns:
            Job | None: 更新后的任务；不存在或状态不匹配时为 None。
        """
        ...

    async def increment_job(self, job_id: uuid.UUID, **deltas: int) -> Job | None: ...

    async def complete_job_if_drained(self, job_id: uuid.UUID) -> Job | None:
        """当投递阶段结束且下游结果已全部到达时，将 PROCESSING 任务置为 COMPLETED。"""
        ...

    async def list_jobs(self, *, status: JobStatus | None, job_type: JobType | None, limit: int) -> list[Job]: ...

    async def upsert_books(self, rows: list[dict[str, Any]]) -> UpsertResult: ...

    async def update_book_by_key(
        self,
        external_id: str,
        source: str,
        values: dict[str, Any],
        *,
        increment_attempts: bool = False,
    ) -> bool: ...

    async def get_book(self, book_id: int) -> Book | None: ...

    async def find_books_needing_detail(self, *, limit: int, max_attempts: int) -> list[Book]: ...

    async def count_price_eligible(self) -> int: ...

    def stream_price_eligible(self, chunk_size: int) -> AsyncIterator[BookRef]: ...

    async def get_price_eligible(self, book_ids: Collection[int]) -> list[BookRef]: ...

    async def find_author(self, external_id: str, source: str) -> Author | None: ...

    async def insert_author(self, *, external_id: str, source: str, name: str, slug: str) -> Author:
        """插入作者；自然键冲突时抛出 DuplicateKeyError。"""
        ...

    def price_transaction(self) -> Any:
        """返回产出 PriceTransaction 的异步上下文管理器。"""
        ...

    async def insert_price_record(self, record: PriceHistory) -> None: ...

    async def latest_price(self, book_id: int) -> PriceHistory | None: ...

    async def price_history(self, book_id: int, limit: int) -> list[PriceHistory]: ...

    async def close(self) -> None: ...


def dedupe_rows(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """按自然键去重，同一批次内后出现的行覆盖先出现的行。"""
    unique: dict[tuple[Any, Any], dict[str, Any]] = {}
    for row in rows:
        unique[(row["external_id"], row["source"])] = row
    return list(unique.values())


class SqlPriceTransaction:
    """基于单个 AsyncSession 事务的 PriceTransaction 实现。"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def lock_book(self, book_id: int) -> Book | None:
        statement = select(Book).where(Book.id == book_id).with_for_update()
        result = await self.session.execute(statement)
        return result.scalar_one_or_none()

    async def latest_success(self, book_id: int) -> PriceHistory | None:
        statement = (
            select(PriceHistory)
            .where(PriceHistory.book_id == book_id, PriceHistory.status == PriceUpdateStatus.SUCCESS)
            .order_by(PriceHistory.recorded_at.desc(), PriceHistory.id.desc())
            .limit(1)
        )
        result = await self.session.execute(statement)
        return result.scalar_one_or_none()

    async def has_record(self, book_id: int, crawl_job_id: str) -> bool:
        statement = (
            select(PriceHistory.id)
            .where(PriceHistory.book_id == book_id, PriceHistory.crawl_job_id == crawl_job_id)
            .limit(1)
        )
        result = await self.session.execute(statement)
        return result.scalar_one_or_none() is not None

    async def set_book_prices(self, book: Book, *, promotional_price: float, original_price: float) -> None:
        book.promotional_price = promotional_price
        book.original_price = original_price
        book.updated_at = now_with_tz()

    async def add_record(self, record: PriceHistory) -> None:
        self.session.add(record)
        await self.session.flush()


class DataStore:
    """数据存储层，负责与 PostgreSQL 交互。

    Attributes:
        async_sessionmaker: 异步数据库会话工厂
    """

    def __init__(self, sessionmaker: async_sessionmaker[AsyncSession]):
        """初始化数据存储层。

        Args:
            sessionmaker: 绑定到异步引擎的会话工厂。
        """
        self.async_sessionmaker = sessionmaker

    async def close(self) -> None:
        return

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """用于获取数据库会话的异步上下文管理器。

        提供自动的事务管理，包括异常处理时的回滚操作。

        Yields:
            AsyncSession: 异步数据库会话对象。

        Raises:
            Exception: 如果在会话中发生错误，将回滚事务并重新抛出异常。
        """
        async with self.async_sessionmaker() as session:
            try:
                yield session
            except Exception as e:
                logger.exception("Error in database session: {}", e)
                await session.rollback()
                raise

    # ==================== 任务记录 ====================

    async def insert_job(self, job_type: JobType) -> Job:
        now = now_with_tz()
        job = Job(
            type=job_type,
            status=JobStatus.PENDING,
            crawled=0,
            total=0,
            succeeded=0,
            duplicates=0,
            errors=0,
            percent=0,
            created_at=now,
            updated_at=now,
        )
        async with self.get_session() as session:
            session.add(job)
            await session.commit()
        return job

    async def get_job(self, job_id: uuid.UUID) -> Job | None:
        async with self.get_session() as session:
            return await session.get(Job, job_id)

    async def update_job(
        self,
        job_id: uuid.UUID,
        values: dict[str, Any],
        *,
        statuses: Collection[JobStatus] | None = None,
    ) -> Job | None:
        statement = update(Job).where(Job.id == job_id)
        if statuses is not None:
            statement = statement.where(Job.status.in_(list(statuses)))
        statement = (
            statement.values(**values, updated_at=now_with_tz())
            .returning(Job)
            .execution_options(synchronize_session=False)
        )
        async with self.get_session() as session:
            result = await session.execute(statement)
            job = result.scalar_one_or_none()
            await session.commit()
            return job

    async def increment_job(self, job_id: uuid.UUID, **deltas: int) -> Job | None:
        values = {name: getattr(Job, name) + delta for name, delta in deltas.items()}
        return await self.update_job(job_id, values)

    async def complete_job_if_drained(self, job_id: uuid.UUID) -> Job | None:
        statement = (
            update(Job)
            .where(
                Job.id == job_id,
                Job.status == JobStatus.PROCESSING,
                Job.total > 0,
                Job.crawled >= Job.total,
                (Job.succeeded + Job.errors) >= Job.total,
            )
            .values(status=JobStatus.COMPLETED, percent=100, completed_at=now_with_tz(), updated_at=now_with_tz())
            .returning(Job)
            .execution_options(synchronize_session=False)
        )
        async with self.get_session() as session:
            result = await session.execute(statement)
            job = result.scalar_one_or_none()
            await session.commit()
            return job

    async def list_jobs(self, *, status: JobStatus | None, job_type: JobType | None, limit: int) -> list[Job]:
        statement = select(Job)
        if status is not None:
            statement = statement.where(Job.status == status)
        if job_type is not None:
            statement = statement.where(Job.type == job_type)
        statement = statement.order_by(Job.created_at.desc()).limit(limit)
        async with self.get_session() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    # ==================== 图书目录 ====================

    async def upsert_books(self, rows: list[dict[str, Any]]) -> UpsertResult:
        """按 ``(external_id, source)`` 批量 upsert 目录行。

        使用 PostgreSQL 的 "INSERT ... ON CONFLICT DO UPDATE"，
        新行带上 needs_detail_crawl=True 与 detail_crawl_attempts=0；
        已存在的行只覆盖概要字段。通过 ``xmax = 0`` 区分插入与更新。

        Args:
            rows: 目录行字段字典列表。

        Returns:
            UpsertResult: 新插入与更新的行数。
        """
        rows = dedupe_rows(rows)
        if not rows:
            return UpsertResult()

        now = now_with_tz()
        values = [
            {
                "description": "",
                **row,
                "author_ids": [],
                "needs_detail_crawl": True,
                "detail_crawl_attempts": 0,
                "detail_crawl_permanently_failed": False,
                "is_deleted": False,
                "created_at": now,
                "updated_at": now,
            }
            for row in rows
        ]

        statement = insert(Book).values(values)
        set_ = {name: statement.excluded[name] for name in OVERVIEW_COLUMNS}
        set_["updated_at"] = now
        statement = statement.on_conflict_do_update(
            index_elements=["external_id", "source"],
            set_=set_,
        ).returning(literal_column("(xmax = 0)").label("inserted"))

        async with self.get_session() as session:
            try:
                result = await session.execute(statement)
                flags = [bool(row.inserted) for row in result]
                await session.commit()
            except IntegrityError as e:
                logger.error("Unexpected integrity error during book upsert: {}", e)
                raise

        inserted = sum(flags)
        return UpsertResult(inserted=inserted, updated=len(flags) - inserted)

    async def update_book_by_key(
        self,
        external_id: str,
        source: str,
        values: dict[str, Any],
        *,
        increment_attempts: bool = False,
    ) -> bool:
        statement = update(Book).where(Book.external_id == external_id, Book.source == source)
        statement = statement.values(**values, updated_at=now_with_tz())
        if increment_attempts:
            statement = statement.values(detail_crawl_attempts=Book.detail_crawl_attempts + 1)
        statement = statement.execution_options(synchronize_session=False)

        async with self.get_session() as session:
            result = await session.execute(statement)
            await session.commit()
            return result.rowcount > 0  # type: ignore[attr-defined]

    async def get_book(self, book_id: int) -> Book | None:
        async with self.get_session() as session:
            return await session.get(Book, book_id)

    async def find_books_needing_detail(self, *, limit: int, max_attempts: int) -> list[Book]:
        statement = (
            select(Book)
            .where(
                Book.needs_detail_crawl.is_(True),
                Book.detail_crawl_permanently_failed.is_(False),
                Book.detail_crawl_attempts < max_attempts,
            )
            .order_by(Book.id)
            .limit(limit)
        )
        async with self.get_session() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def count_price_eligible(self) -> int:
        async with self.get_session() as session:
            result = await session.execute(select(func.count()).select_from(Book).where(*PRICE_ELIGIBLE))
            return int(result.scalar_one())

    async def stream_price_eligible(self, chunk_size: int) -> AsyncIterator[BookRef]:
        """通过服务端游标流式读取可更新价格的图书，内存占用与总量无关。"""
        statement = (
            select(Book.id, Book.external_id, Book.source)
            .where(*PRICE_ELIGIBLE)
            .order_by(Book.id)
            .execution_options(yield_per=chunk_size)
        )
        async with self.async_sessionmaker() as session:
            result = await session.stream(statement)
            async for row in result:
                yield BookRef(id=row.id, external_id=row.external_id, source=row.source)

    async def get_price_eligible(self, book_ids: Collection[int]) -> list[BookRef]:
        statement = (
            select(Book.id, Book.external_id, Book.source)
            .where(Book.id.in_(list(book_ids)), *PRICE_ELIGIBLE)
            .order_by(Book.id)
        )
        async with self.get_session() as session:
            result = await session.execute(statement)
            return [BookRef(id=row.id, external_id=row.external_id, source=row.source) for row in result]

    # ==================== 作者 ====================

    async def find_author(self, external_id: str, source: str) -> Author | None:
        statement = select(Author).where(Author.external_id == external_id, Author.source == source)
        async with self.get_session() as session:
            result = await session.execute(statement)
            return result.scalar_one_or_none()

    async def insert_author(self, *, external_id: str, source: str, name: str, slug: str) -> Author:
        author = Author(
            external_id=external_id,
            source=source,
            name=name,
            slug=slug,
            is_from_crawler=True,
            created_at=now_with_tz(),
        )
        async with self.async_sessionmaker() as session:
            session.add(author)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise DuplicateKeyError(f"author ({external_id}, {source}) already exists") from e
        return author

    # ==================== 价格历史 ====================

    @asynccontextmanager
    async def price_transaction(self) -> AsyncGenerator[SqlPriceTransaction, None]:
        """开启一个数据库事务；上下文内任一步骤抛出异常时整体回滚。"""
        async with self.async_sessionmaker() as session:
            async with session.begin():
                yield SqlPriceTransaction(session)

    async def insert_price_record(self, record: PriceHistory) -> None:
        async with self.get_session() as session:
            session.add(record)
            await session.commit()

    async def latest_price(self, book_id: int) -> PriceHistory | None:
        async with self.get_session() as session:
            return await SqlPriceTransaction(session).latest_success(book_id)

    async def price_history(self, book_id: int, limit: int) -> list[PriceHistory]:
        statement = (
            select(PriceHistory)
            .where(PriceHistory.book_id == book_id)
            .order_by(PriceHistory.recorded_at.desc(), PriceHistory.id.desc())
            .limit(limit)
        )
        async with self.get_session() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())
