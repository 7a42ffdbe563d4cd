"""列表爬虫模块。

逐页抓取平台列表接口，将商品概要按自然键批量 upsert 到目录，
并为每个商品投递一条详情抓取任务。
"""

from __future__ import annotations

import asyncio
from itertools import batched
from typing import TYPE_CHECKING

from loguru import logger

from ..core.exceptions import InvalidStateError
from ..core.metrics import BOOKS_UPSERTED, LIST_PAGES
from ..models import JobType
from .tasks import DetailCrawlTask, ListCrawlTask

if TYPE_CHECKING:
    from ..core.client import MarketplaceClient
    from ..core.config import Config
    from ..core.datastore import Store
    from ..models import ListingItem
    from .dispatcher import TaskDispatcher
    from .jobs import JobTracker


class ListCrawler:
    """列表爬虫。

    Attributes:
        client: 平台接口客户端
        store: 存储层实例
        jobs: 任务追踪器
        dispatcher: 任务分发器
        source: 数据来源名称
    """

    def __init__(
        self,
        *,
        client: MarketplaceClient,
        store: Store,
        jobs: JobTracker,
        dispatcher: TaskDispatcher,
        config: Config,
    ):
        self.client = client
        self.store = store
        self.jobs = jobs
        self.dispatcher = dispatcher
        self.source = config.source_name
        self.page_size = config.crawler.page_size
        self.max_pages = config.crawler.max_pages
        self.bulk_batch_size = config.crawler.bulk_batch_size
        self.page_delay_seconds = config.crawler.page_delay_seconds
        self.log = logger.bind(name="ListCrawler")

    async def trigger_crawl(self) -> str:
        """创建列表抓取任务并投递，立即返回任务ID。"""
        job_id = await self.jobs.create(JobType.LIST_CRAWL)
        await self.dispatcher.dispatch(ListCrawlTask(job_id=job_id))
        self.log.info("[{}] List crawl queued", job_id)
        return job_id

    async def handle(self, task: ListCrawlTask) -> None:
        if task.type != JobType.LIST_CRAWL:
            self.log.warning("[{}] Ignoring list task of type {}", task.job_id, task.type)
            return
        await self.run(task.job_id)

    async def run(self, job_id: str) -> None:
        """执行一次列表抓取。

        主要流程：
        1. 将任务置为 PROCESSING（非 PENDING 的任务视为重复投递，直接跳过）
        2. 逐页抓取，遇到空页停止；单页失败计一次错误后继续
        3. 每个子批次 upsert 后更新进度并投递详情抓取任务
        4. 全部结束后以新增/更新/错误计数完成任务；未预期异常则置为 FAILED

        Args:
            job_id: 列表抓取任务ID。
        """
        try:
            await self.jobs.start(job_id)
        except InvalidStateError as e:
            self.log.warning("[{}] Skipping list crawl: {}", job_id, e)
            return

        total = self.max_pages * self.page_size
        crawled = new_books = updated = errors = 0

        try:
            for page in range(1, self.max_pages + 1):
                if page > 1:
                    await asyncio.sleep(self.page_delay_seconds)

                try:
                    listing = await self.client.get_listing_page(page, self.page_size)
                    errors += listing.skipped
                    if not listing.items:
                        LIST_PAGES.labels(status="empty").inc()
                        self.log.info("[{}] Page {} is empty, stopping", job_id, page)
                        break

                    for batch in batched(listing.items, self.bulk_batch_size):
                        result = await self.store.upsert_books([item.to_book_values(self.source) for item in batch])
                        crawled += len(batch)
                        new_books += result.inserted
                        updated += result.updated
                        BOOKS_UPSERTED.labels(result="inserted").inc(result.inserted)
                        BOOKS_UPSERTED.labels(result="updated").inc(result.updated)

                        await self.jobs.update_progress(job_id, crawled, total, new_books, updated, errors)
                        await self._publish_detail_tasks(job_id, batch)

                    LIST_PAGES.labels(status="success").inc()
                    self.log.debug("[{}] Page {}: {} items", job_id, page, len(listing.items))

                except Exception as e:
                    errors += 1
                    LIST_PAGES.labels(status="error").inc()
                    self.log.warning("[{}] Failed to crawl page {}: {}", job_id, page, e)

            await self.jobs.complete(job_id, new_books, updated, errors)

        except Exception as e:
            self.log.exception("[{}] List crawl failed: {}", job_id, e)
            await self.jobs.fail(job_id, str(e))

    async def _publish_detail_tasks(self, job_id: str, items: tuple[ListingItem, ...]) -> None:
        tasks = [
            DetailCrawlTask(item_id=item.id, job_id=job_id, source=self.source, retry_count=0) for item in items
        ]
        results = await asyncio.gather(*(self.dispatcher.dispatch(t) for t in tasks), return_exceptions=True)
        failures = [r for r in results if isinstance(r, BaseException)]
        if failures:
            self.log.warning(
                "[{}] Failed to publish {}/{} detail tasks: {}", job_id, len(failures), len(tasks), failures[0]
            )
