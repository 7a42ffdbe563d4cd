"""详情爬虫模块。

负责抓取单个商品详情、解析并落库作者，再回写目录行；
失败时记录错误并通过延迟重发安排重试，达到上限后标记为永久失败。
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from ..core.exceptions import DuplicateKeyError, InvalidArgumentError, PermanentRemoteError
from ..core.metrics import AUTHOR_CACHE_HITS, DETAIL_CRAWLS
from ..models import JobType, now_with_tz
from .tasks import DetailCrawlTask

if TYPE_CHECKING:
    from cashews import Cache

    from ..core.client import MarketplaceClient
    from ..core.config import Config
    from ..core.datastore import Store
    from ..models import AuthorInfo, ProductDetail
    from .dispatcher import TaskDispatcher
    from .jobs import JobTracker


class AuthorResolver:
    """作者解析器。

    按自然键 ``(external_id, source)`` 查找作者，不存在时创建。
    查找结果缓存在 cashews 中，并发插入冲突时重新查询一次。

    Attributes:
        store: 存储层实例
        cache: cashews 缓存实例
        ttl: 缓存过期时间（秒）
    """

    def __init__(self, store: Store, cache: Cache, ttl: int):
        self.store = store
        self.cache = cache
        self.ttl = ttl
        self.log = logger.bind(name="AuthorResolver")

    @staticmethod
    def _cache_key(external_id: str, source: str) -> str:
        return f"author:{source}:{external_id}"

    async def resolve(self, author: AuthorInfo, source: str) -> int:
        """返回作者在本地的ID，必要时创建作者记录。

        Raises:
            DuplicateKeyError: 插入冲突后重新查询仍未找到。
        """
        external_id = str(author.id)
        key = self._cache_key(external_id, source)

        cached = await self.cache.get(key)
        if cached is not None:
            AUTHOR_CACHE_HITS.inc()
            return int(cached)

        existing = await self.store.find_author(external_id, source)
        if existing is None:
            try:
                existing = await self.store.insert_author(
                    external_id=external_id, source=source, name=author.name, slug=author.slug
                )
                self.log.debug("Created author {} ({})", author.name, external_id)
            except DuplicateKeyError:
                existing = await self.store.find_author(external_id, source)
                if existing is None:
                    raise

        await self.cache.set(key, existing.id, expire=self.ttl)
        return existing.id

    async def resolve_all(self, authors: list[AuthorInfo], source: str) -> list[int]:
        """依次解析作者列表，单个作者失败时跳过，结果按出现顺序去重。"""
        ids: list[int] = []
        for author in authors:
            try:
                author_id = await self.resolve(author, source)
            except Exception as e:
                self.log.warning("Failed to resolve author {} ({}): {}", author.name, author.id, e)
                continue
            if author_id not in ids:
                ids.append(author_id)
        return ids


class DetailCrawler:
    """详情爬虫。

    Attributes:
        client: 平台接口客户端
        store: 存储层实例
        jobs: 任务追踪器
        dispatcher: 任务分发器
        authors: 作者解析器
    """

    def __init__(
        self,
        *,
        client: MarketplaceClient,
        store: Store,
        jobs: JobTracker,
        dispatcher: TaskDispatcher,
        authors: AuthorResolver,
        config: Config,
    ):
        self.client = client
        self.store = store
        self.jobs = jobs
        self.dispatcher = dispatcher
        self.authors = authors
        self.max_retry_attempts = config.crawler.max_retry_attempts
        self.retry_delay_seconds = config.crawler.retry_delay_seconds
        self.recrawl_limit = config.crawler.recrawl_limit
        self.log = logger.bind(name="DetailCrawler")

    async def handle(self, task: DetailCrawlTask) -> None:
        await self.run(task.item_id, task.job_id, task.source, task.retry_count)

    async def run(self, item_id: int, job_id: str, source: str, retry_count: int = 0) -> None:
        """抓取单个商品详情并回写目录行。

        Args:
            item_id: 平台商品ID。
            job_id: 来源任务ID，仅用于日志与重试消息。
            source: 数据来源。
            retry_count: 已重试次数。
        """
        external_id = str(item_id)
        try:
            detail = await self.client.get_product_detail(item_id)
            if detail is None:
                raise PermanentRemoteError(f"empty detail payload for product {item_id}")

            author_ids = await self.authors.resolve_all(detail.authors, source)
            matched = await self.store.update_book_by_key(
                external_id,
                source,
                self._detail_values(detail, author_ids),
                increment_attempts=True,
            )
        except Exception as e:
            await self._handle_failure(item_id, job_id, source, retry_count, e)
            return

        if not matched:
            DETAIL_CRAWLS.labels(status="row_missing").inc()
            self.log.warning("[{}] No catalog row for product {} ({})", job_id, item_id, source)
            return

        DETAIL_CRAWLS.labels(status="success").inc()
        self.log.debug("[{}] Detail crawled for product {}", job_id, item_id)

    @staticmethod
    def _detail_values(detail: ProductDetail, author_ids: list[int]) -> dict[str, object]:
        values: dict[str, object] = {
            "description": detail.description,
            "quantity_sold": detail.quantity_sold,
            "needs_detail_crawl": False,
            "detail_crawl_success": True,
            "last_detail_crawl_at": now_with_tz(),
            "last_detail_crawl_error": None,
        }
        if detail.original_price is not None:
            values["original_price"] = detail.original_price
        if detail.promotional_price is not None:
            values["promotional_price"] = detail.promotional_price
        if detail.image:
            values["image"] = detail.image
        if author_ids:
            values["author_ids"] = author_ids
        return values

    async def _handle_failure(
        self, item_id: int, job_id: str, source: str, retry_count: int, error: Exception
    ) -> None:
        """记录失败并决定重试或永久失败。

        失败字段与尝试次数在一次更新内写入；``retry_count + 1`` 未达到上限时
        按 ``retry_delay * (retry_count + 1)`` 安排延迟重发，否则标记为永久失败。
        """
        next_attempt = retry_count + 1
        permanent = next_attempt >= self.max_retry_attempts
        values: dict[str, object] = {
            "last_detail_crawl_error": str(error) or type(error).__name__,
            "last_detail_crawl_at": now_with_tz(),
            "detail_crawl_success": False,
        }
        if permanent:
            values["needs_detail_crawl"] = False
            values["detail_crawl_permanently_failed"] = True

        try:
            await self.store.update_book_by_key(str(item_id), source, values, increment_attempts=True)
        except Exception as e:
            self.log.error("[{}] Failed to record detail failure for product {}: {}", job_id, item_id, e)

        if permanent:
            DETAIL_CRAWLS.labels(status="permanently_failed").inc()
            self.log.warning(
                "[{}] Product {} permanently failed after {} attempts: {}", job_id, item_id, next_attempt, error
            )
            return

        delay = self.retry_delay_seconds * next_attempt
        task = DetailCrawlTask(item_id=item_id, job_id=job_id, source=source, retry_count=next_attempt)
        try:
            await self.dispatcher.dispatch_later(task, delay)
        except Exception as e:
            self.log.error("[{}] Failed to schedule retry for product {}: {}", job_id, item_id, e)
            return

        DETAIL_CRAWLS.labels(status="retry_scheduled").inc()
        self.log.info(
            "[{}] Detail crawl for product {} failed ({}), retry {} in {:.1f}s",
            job_id,
            item_id,
            error,
            next_attempt,
            delay,
        )

    async def recrawl_missing(self, limit: int | None = None) -> tuple[str, int]:
        """重新投递仍需抓取详情的目录行。

        只选择 needs_detail_crawl 为真、未永久失败且尝试次数低于上限的行；
        external_id 缺失或非数字的行被跳过。重发的任务沿用行上已有的尝试次数，
        使总尝试次数仍受上限约束。

        Args:
            limit: 最多处理的行数，默认取配置值。

        Returns:
            tuple[str, int]: DETAIL_RECRAWL 任务ID与实际投递的任务数。

        Raises:
            InvalidArgumentError: limit 小于 1。
        """
        if limit is None:
            limit = self.recrawl_limit
        elif limit < 1:
            raise InvalidArgumentError("limit must be a positive integer")
        job_id = await self.jobs.create(JobType.DETAIL_RECRAWL)
        await self.jobs.start(job_id)

        emitted = skipped = 0
        try:
            books = await self.store.find_books_needing_detail(limit=limit, max_attempts=self.max_retry_attempts)
            for book in books:
                if not book.external_id or not book.external_id.isdigit():
                    self.log.warning(
                        "[{}] Skipping book {} with invalid external id {!r}", job_id, book.id, book.external_id
                    )
                    skipped += 1
                    continue

                task = DetailCrawlTask(
                    item_id=int(book.external_id),
                    job_id=job_id,
                    source=book.source,
                    retry_count=book.detail_crawl_attempts,
                )
                try:
                    await self.dispatcher.dispatch(task)
                    emitted += 1
                except Exception as e:
                    self.log.error("[{}] Failed to re-queue book {}: {}", job_id, book.id, e)
                    skipped += 1

            await self.jobs.complete(job_id, emitted, 0, skipped)
        except Exception as e:
            self.log.exception("[{}] Detail re-crawl failed: {}", job_id, e)
            await self.jobs.fail(job_id, str(e))
            raise

        self.log.info("[{}] Re-queued {} detail crawls ({} skipped)", job_id, emitted, skipped)
        return job_id, emitted
