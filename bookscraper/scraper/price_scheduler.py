"""价格更新调度模块。

定时或按需创建价格更新任务：通过服务端游标流式读取可更新价格的图书，
按批次并行投递价格抓取任务；任务的结束由价格更新消费者在结果全部到达后完成。
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from loguru import logger

from ..core.exceptions import InvalidArgumentError
from ..models import JobType
from .tasks import PriceCrawlTask

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable

    from ..core.config import Config
    from ..core.datastore import Store
    from ..models import BookRef
    from .dispatcher import TaskDispatcher
    from .jobs import JobTracker


class PriceUpdateScheduler:
    """价格更新调度器。

    Attributes:
        store: 存储层实例
        jobs: 任务追踪器
        dispatcher: 任务分发器
        batch_size: 每批投递的任务数
        batch_delay_seconds: 批次之间的间隔
    """

    def __init__(self, *, store: Store, jobs: JobTracker, dispatcher: TaskDispatcher, config: Config):
        self.store = store
        self.jobs = jobs
        self.dispatcher = dispatcher
        self.batch_size = config.price_update.batch_size
        self.batch_delay_seconds = config.price_update.batch_delay_seconds
        self.log = logger.bind(name="PriceScheduler")
        self._background: set[asyncio.Task] = set()

    async def trigger_price_update(self, *, background: bool = True) -> tuple[str, int]:
        """创建一次全量价格更新。

        主要流程：
        1. 创建并启动 PRICE_UPDATE 任务
        2. 统计可更新价格的图书数量，为 0 时直接以零计数完成
        3. 流式读取并分批投递价格抓取任务（默认在后台执行）

        Args:
            background: 为 False 时在当前协程内完成投递阶段。

        Returns:
            tuple[str, int]: 任务ID与待更新的图书数量。
        """
        job_id = await self.jobs.create(JobType.PRICE_UPDATE)
        await self.jobs.start(job_id)

        try:
            total = await self.store.count_price_eligible()
        except Exception as e:
            self.log.exception("[{}] Failed to count eligible books: {}", job_id, e)
            await self.jobs.fail(job_id, str(e))
            raise

        if total == 0:
            self.log.info("[{}] No books eligible for price update", job_id)
            await self.jobs.complete(job_id, 0, 0, 0)
            return job_id, 0

        await self.jobs.update_progress(job_id, 0, total)
        self.log.info("[{}] Scheduling price update for {} books", job_id, total)

        stream = self.store.stream_price_eligible(self.batch_size)
        if background:
            task = asyncio.create_task(self._stream_and_publish(job_id, stream, total))
            self._background.add(task)
            task.add_done_callback(self._on_background_done)
        else:
            await self._stream_and_publish(job_id, stream, total)
        return job_id, total

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            self.log.error("Background price scheduling ended with error: {}", task.exception())

    async def update_prices_for_books(self, book_ids: list[int]) -> tuple[str, int]:
        """为指定图书创建一次手动价格更新。

        Args:
            book_ids: 图书ID列表，不可更新价格的图书会被忽略。

        Returns:
            tuple[str, int]: MANUAL_PRICE_UPDATE 任务ID与投递成功的任务数。

        Raises:
            InvalidArgumentError: book_ids 为空。
        """
        if not book_ids:
            raise InvalidArgumentError("book_ids must not be empty")

        job_id = await self.jobs.create(JobType.MANUAL_PRICE_UPDATE)
        await self.jobs.start(job_id)
        try:
            refs = await self.store.get_price_eligible(book_ids)
            if not refs:
                self.log.info("[{}] None of the {} requested books are eligible", job_id, len(book_ids))
                await self.jobs.complete(job_id, 0, 0, 0)
                return job_id, 0

            await self.jobs.update_progress(job_id, 0, len(refs))
            published = await self._publish_batch(job_id, refs)
            await self._close_scheduling(job_id, published, len(refs) - published)
        except Exception as e:
            self.log.exception("[{}] Manual price update failed: {}", job_id, e)
            await self.jobs.fail(job_id, str(e))
            raise

        self.log.info("[{}] Manual price update queued for {} books", job_id, published)
        return job_id, published

    async def _stream_and_publish(self, job_id: str, stream: AsyncIterator[BookRef], total: int) -> int:
        """流式读取并分批投递，结束后把 total 固定为实际投递数。"""
        published = processed = 0
        buffer: list[BookRef] = []

        async def flush() -> None:
            nonlocal published, processed
            published += await self._publish_batch(job_id, buffer)
            processed += len(buffer)
            buffer.clear()
            await self.jobs.update_progress(job_id, processed, max(total, processed))

        try:
            async for ref in stream:
                buffer.append(ref)
                if len(buffer) >= self.batch_size:
                    await flush()
                    await asyncio.sleep(self.batch_delay_seconds)
            if buffer:
                await flush()

            await self._close_scheduling(job_id, published, processed - published)
        except Exception as e:
            self.log.exception("[{}] Price scheduling failed: {}", job_id, e)
            await self.jobs.fail(job_id, str(e))
            raise

        self.log.info("[{}] Published {} price crawl tasks", job_id, published)
        return published

    async def _close_scheduling(self, job_id: str, published: int, failed: int = 0) -> None:
        if published == 0:
            await self.jobs.complete(job_id, 0, 0, failed)
            return
        # 投递阶段结束：total 固定为实际投递数，结果可能已先于此全部到达
        await self.jobs.update_progress(job_id, published, published)
        await self.jobs.complete_if_drained(job_id)

    async def _publish_batch(self, job_id: str, refs: Iterable[BookRef]) -> int:
        """并行投递一批价格抓取任务，单条失败只记录日志，返回成功数量。"""
        tasks = [
            PriceCrawlTask(item_id=ref.id, external_id=ref.external_id, source=ref.source, job_id=job_id)
            for ref in refs
        ]
        results = await asyncio.gather(*(self.dispatcher.dispatch(t) for t in tasks), return_exceptions=True)
        failures = [r for r in results if isinstance(r, BaseException)]
        for failure in failures[:3]:
            self.log.error("[{}] Failed to publish price task: {}", job_id, failure)
        return len(tasks) - len(failures)

    async def wait_background(self) -> None:
        """等待所有后台投递结束。"""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
