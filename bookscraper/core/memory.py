"""内存存储实现。

与 DataStore 提供相同的存储协议，数据保存在进程内字典中（单进程降级方案，
亦用于测试）。所有写操作在同一把 asyncio.Lock 下执行；价格事务先暂存写入，
上下文正常退出时一次性提交，异常时全部丢弃。
"""

from __future__ import annotations

import asyncio
import copy
import itertools
import uuid
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from ..models import Author, Book, BookRef, Job, JobStatus, PriceHistory, PriceUpdateStatus, UpsertResult, now_with_tz
from .datastore import OVERVIEW_COLUMNS, dedupe_rows
from .exceptions import DuplicateKeyError

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, AsyncIterator, Collection

    from ..models import JobType


def _clone[M: (Job, Book, Author, PriceHistory)](obj: M) -> M:
    cls = type(obj)
    return cls(**{c.key: copy.copy(getattr(obj, c.key)) for c in cls.__table__.columns})  # type: ignore[attr-defined]


def _is_price_eligible(book: Book) -> bool:
    return bool(
        book.is_from_crawler and book.external_id is not None and book.source is not None and not book.is_deleted
    )


def _latest_success(records: list[PriceHistory], book_id: int) -> PriceHistory | None:
    candidates = [r for r in records if r.book_id == book_id and r.status == PriceUpdateStatus.SUCCESS]
    if not candidates:
        return None
    return max(candidates, key=lambda r: (r.recorded_at, r.id or 0))


class MemoryPriceTransaction:
    """暂存写入的价格事务，由 MemoryDataStore 在提交时应用。"""

    def __init__(self, store: MemoryDataStore):
        self._store = store
        self.price_updates: dict[int, tuple[float, float]] = {}
        self.records: list[PriceHistory] = []

    async def lock_book(self, book_id: int) -> Book | None:
        book = self._store._books.get(book_id)
        return _clone(book) if book is not None else None

    async def latest_success(self, book_id: int) -> PriceHistory | None:
        return _latest_success(self._store._history + self.records, book_id)

    async def has_record(self, book_id: int, crawl_job_id: str) -> bool:
        return any(
            r.book_id == book_id and r.crawl_job_id == crawl_job_id for r in self._store._history + self.records
        )

    async def set_book_prices(self, book: Book, *, promotional_price: float, original_price: float) -> None:
        book.promotional_price = promotional_price
        book.original_price = original_price
        self.price_updates[book.id] = (promotional_price, original_price)

    async def add_record(self, record: PriceHistory) -> None:
        record.id = next(self._store._history_ids)
        self.records.append(record)


class MemoryDataStore:
    """基于内存字典的存储实现。"""

    def __init__(self) -> None:
        self._jobs: dict[uuid.UUID, Job] = {}
        self._books: dict[int, Book] = {}
        self._book_keys: dict[tuple[str, str], int] = {}
        self._authors: dict[int, Author] = {}
        self._author_keys: dict[tuple[str, str], int] = {}
        self._history: list[PriceHistory] = []
        self._book_ids = itertools.count(1)
        self._author_ids = itertools.count(1)
        self._history_ids = itertools.count(1)
        self._guard = asyncio.Lock()

    async def close(self) -> None:
        return

    # ==================== 任务记录 ====================

    async def insert_job(self, job_type: JobType) -> Job:
        now = now_with_tz()
        job = Job(
            id=uuid.uuid4(),
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
        async with self._guard:
            self._jobs[job.id] = job
        return _clone(job)

    async def get_job(self, job_id: uuid.UUID) -> Job | None:
        job = self._jobs.get(job_id)
        return _clone(job) if job is not None else None

    async def update_job(
        self,
        job_id: uuid.UUID,
        values: dict[str, Any],
        *,
        statuses: Collection[JobStatus] | None = None,
    ) -> Job | None:
        async with self._guard:
            job = self._jobs.get(job_id)
            if job is None or (statuses is not None and job.status not in statuses):
                return None
            for name, value in values.items():
                setattr(job, name, value)
            job.updated_at = now_with_tz()
            return _clone(job)

    async def increment_job(self, job_id: uuid.UUID, **deltas: int) -> Job | None:
        async with self._guard:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            for name, delta in deltas.items():
                setattr(job, name, getattr(job, name) + delta)
            job.updated_at = now_with_tz()
            return _clone(job)

    async def complete_job_if_drained(self, job_id: uuid.UUID) -> Job | None:
        async with self._guard:
            job = self._jobs.get(job_id)
            if (
                job is None
                or job.status != JobStatus.PROCESSING
                or job.total <= 0
                or job.crawled < job.total
                or job.succeeded + job.errors < job.total
            ):
                return None
            now = now_with_tz()
            job.status = JobStatus.COMPLETED
            job.percent = 100
            job.completed_at = now
            job.updated_at = now
            return _clone(job)

    async def list_jobs(self, *, status: JobStatus | None, job_type: JobType | None, limit: int) -> list[Job]:
        jobs = [
            j
            for j in self._jobs.values()
            if (status is None or j.status == status) and (job_type is None or j.type == job_type)
        ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [_clone(j) for j in jobs[:limit]]

    # ==================== 图书目录 ====================

    async def upsert_books(self, rows: list[dict[str, Any]]) -> UpsertResult:
        inserted = updated = 0
        now = now_with_tz()
        async with self._guard:
            for row in dedupe_rows(rows):
                key = (row["external_id"], row["source"])
                book_id = self._book_keys.get(key)
                if book_id is not None:
                    book = self._books[book_id]
                    for name in OVERVIEW_COLUMNS:
                        if name in row:
                            setattr(book, name, row[name])
                    book.updated_at = now
                    updated += 1
                    continue

                values: dict[str, Any] = {
                    "description": "",
                    "original_price": 0,
                    "promotional_price": 0,
                    "quantity_sold": 0,
                    "is_from_crawler": False,
                    **row,
                    "author_ids": [],
                    "is_deleted": False,
                    "needs_detail_crawl": True,
                    "detail_crawl_attempts": 0,
                    "detail_crawl_permanently_failed": False,
                    "created_at": now,
                    "updated_at": now,
                }
                book = Book(id=next(self._book_ids), **values)
                self._books[book.id] = book
                self._book_keys[key] = book.id
                inserted += 1
        return UpsertResult(inserted=inserted, updated=updated)

    async def add_book(self, **values: Any) -> Book:
        """直接写入一行目录数据（不经过 upsert），用于导入或测试夹具。"""
        now = now_with_tz()
        defaults: dict[str, Any] = {
            "title": "",
            "description": "",
            "original_price": 0,
            "promotional_price": 0,
            "quantity_sold": 0,
            "author_ids": [],
            "is_from_crawler": True,
            "is_deleted": False,
            "needs_detail_crawl": False,
            "detail_crawl_attempts": 0,
            "detail_crawl_permanently_failed": False,
            "created_at": now,
            "updated_at": now,
        }
        async with self._guard:
            book = Book(id=next(self._book_ids), **(defaults | values))
            self._books[book.id] = book
            if book.external_id is not None and book.source is not None:
                self._book_keys[(book.external_id, book.source)] = book.id
            return _clone(book)

    async def update_book_by_key(
        self,
        external_id: str,
        source: str,
        values: dict[str, Any],
        *,
        increment_attempts: bool = False,
    ) -> bool:
        async with self._guard:
            book_id = self._book_keys.get((external_id, source))
            if book_id is None:
                return False
            book = self._books[book_id]
            for name, value in values.items():
                setattr(book, name, value)
            if increment_attempts:
                book.detail_crawl_attempts += 1
            book.updated_at = now_with_tz()
            return True

    async def get_book(self, book_id: int) -> Book | None:
        book = self._books.get(book_id)
        return _clone(book) if book is not None else None

    async def find_books_needing_detail(self, *, limit: int, max_attempts: int) -> list[Book]:
        books = [
            b
            for b in sorted(self._books.values(), key=lambda b: b.id)
            if b.needs_detail_crawl and not b.detail_crawl_permanently_failed and b.detail_crawl_attempts < max_attempts
        ]
        return [_clone(b) for b in books[:limit]]

    async def count_price_eligible(self) -> int:
        return sum(1 for b in self._books.values() if _is_price_eligible(b))

    async def stream_price_eligible(self, chunk_size: int) -> AsyncIterator[BookRef]:
        book_ids = sorted(self._books)
        for offset in range(0, len(book_ids), chunk_size):
            for book_id in book_ids[offset : offset + chunk_size]:
                book = self._books.get(book_id)
                if book is not None and _is_price_eligible(book):
                    yield BookRef(id=book.id, external_id=book.external_id, source=book.source)  # type: ignore[arg-type]
            await asyncio.sleep(0)

    async def get_price_eligible(self, book_ids: Collection[int]) -> list[BookRef]:
        refs = []
        for book_id in sorted(set(book_ids)):
            book = self._books.get(book_id)
            if book is not None and _is_price_eligible(book):
                refs.append(BookRef(id=book.id, external_id=book.external_id, source=book.source))  # type: ignore[arg-type]
        return refs

    # ==================== 作者 ====================

    async def find_author(self, external_id: str, source: str) -> Author | None:
        author_id = self._author_keys.get((external_id, source))
        return _clone(self._authors[author_id]) if author_id is not None else None

    async def insert_author(self, *, external_id: str, source: str, name: str, slug: str) -> Author:
        async with self._guard:
            key = (external_id, source)
            if key in self._author_keys:
                raise DuplicateKeyError(f"author ({external_id}, {source}) already exists")
            author = Author(
                id=next(self._author_ids),
                external_id=external_id,
                source=source,
                name=name,
                slug=slug,
                is_from_crawler=True,
                created_at=now_with_tz(),
            )
            self._authors[author.id] = author
            self._author_keys[key] = author.id
            return _clone(author)

    # ==================== 价格历史 ====================

    @asynccontextmanager
    async def price_transaction(self) -> AsyncGenerator[MemoryPriceTransaction, None]:
        async with self._guard:
            tx = MemoryPriceTransaction(self)
            yield tx
            now = now_with_tz()
            for book_id, (promotional_price, original_price) in tx.price_updates.items():
                book = self._books[book_id]
                book.promotional_price = promotional_price
                book.original_price = original_price
                book.updated_at = now
            self._history.extend(tx.records)

    async def insert_price_record(self, record: PriceHistory) -> None:
        async with self._guard:
            record.id = next(self._history_ids)
            self._history.append(record)

    async def latest_price(self, book_id: int) -> PriceHistory | None:
        record = _latest_success(self._history, book_id)
        return _clone(record) if record is not None else None

    async def price_history(self, book_id: int, limit: int) -> list[PriceHistory]:
        records = [r for r in self._history if r.book_id == book_id]
        records.sort(key=lambda r: (r.recorded_at, r.id or 0), reverse=True)
        return [_clone(r) for r in records[:limit]]
