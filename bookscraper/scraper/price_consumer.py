"""价格更新消费者模块。

将价格抓取结果写入目录与价格历史：
- SUCCESS：在一个事务内锁定图书行、更新价格、追加 SUCCESS 记录，要么全部提交要么全部回滚
- FAILED：追加一条带当前价格快照的 FAILED 记录，不改动目录
两条路径结束后都会累加所属任务的计数，并在结果全部到达时结束任务；
同一任务对同一图书的重复结果被忽略。
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from ..core.exceptions import NotFoundError
from ..core.metrics import PRICE_UPDATES
from ..models import PriceHistory, PriceUpdateStatus, now_with_tz

if TYPE_CHECKING:
    from ..core.datastore import Store
    from .jobs import JobTracker
    from .tasks import PriceCrawlResult

HISTORY_LIMIT = 30


def price_change(new_price: float, last: PriceHistory | None) -> tuple[float | None, float | None]:
    """计算相对上一条 SUCCESS 记录的价格变化与变化百分比。

    没有上一条记录时两者均为 None；上一条价格为 0 时百分比为 None。

    Returns:
        tuple[float | None, float | None]: (price_change, price_change_percentage)
    """
    if last is None:
        return None, None
    change = new_price - last.promotional_price
    if not last.promotional_price:
        return change, None
    return change, round(change / last.promotional_price * 100, 2)


class PriceUpdateConsumer:
    """价格更新消费者。

    Attributes:
        store: 存储层实例
        jobs: 任务追踪器
    """

    def __init__(self, *, store: Store, jobs: JobTracker):
        self.store = store
        self.jobs = jobs
        self.log = logger.bind(name="PriceUpdateConsumer")

    async def handle(self, result: PriceCrawlResult) -> None:
        await self.process(result)

    async def process(self, result: PriceCrawlResult) -> bool:
        """应用一条价格抓取结果。

        同一任务对同一图书的结果只生效一次：重复投递的结果既不写入历史，
        也不再累加任务计数。

        Returns:
            bool: 是否计为成功（SUCCESS 且事务提交）。
        """
        if result.status == PriceUpdateStatus.SUCCESS:
            outcome = await self._apply_success(result)
        else:
            outcome = await self._record_failure(result)

        if outcome is None:
            PRICE_UPDATES.labels(status="duplicate").inc()
            self.log.info("[{}] Result for book {} already applied, skipping", result.job_id, result.item_id)
            return False

        try:
            await self.jobs.record_outcome(result.job_id, success=outcome)
        except Exception as e:
            self.log.error("[{}] Failed to record outcome for book {}: {}", result.job_id, result.item_id, e)
        return outcome

    async def _apply_success(self, result: PriceCrawlResult) -> bool | None:
        try:
            async with self.store.price_transaction() as tx:
                book = await tx.lock_book(result.item_id)
                if book is None:
                    raise NotFoundError(f"book {result.item_id} not found")
                if await tx.has_record(book.id, result.job_id):
                    return None

                last = await tx.latest_success(book.id)
                change, percentage = price_change(result.new_price, last)
                await tx.set_book_prices(
                    book, promotional_price=result.new_price, original_price=result.original_price
                )
                await tx.add_record(
                    PriceHistory(
                        book_id=book.id,
                        external_id=result.external_id,
                        source=result.source,
                        original_price=result.original_price,
                        promotional_price=result.new_price,
                        price_change=change,
                        price_change_percentage=percentage,
                        recorded_at=now_with_tz(),
                        crawl_job_id=result.job_id,
                        status=PriceUpdateStatus.SUCCESS,
                    )
                )
        except NotFoundError:
            PRICE_UPDATES.labels(status="book_missing").inc()
            self.log.warning("[{}] Book {} not found, price result dropped", result.job_id, result.item_id)
            return False
        except Exception as e:
            PRICE_UPDATES.labels(status="transaction_error").inc()
            self.log.error("[{}] Price update for book {} rolled back: {}", result.job_id, result.item_id, e)
            return False

        PRICE_UPDATES.labels(status="success").inc()
        self.log.debug("[{}] Book {} price -> {} (change {})", result.job_id, result.item_id, result.new_price, change)
        return True

    async def _record_failure(self, result: PriceCrawlResult) -> bool | None:
        try:
            async with self.store.price_transaction() as tx:
                book = await tx.lock_book(result.item_id)
                if book is None:
                    raise NotFoundError(f"book {result.item_id} not found")
                if await tx.has_record(book.id, result.job_id):
                    return None

                # 目录价格保持不变，记录当前价格快照
                await tx.add_record(
                    PriceHistory(
                        book_id=book.id,
                        external_id=result.external_id,
                        source=result.source,
                        original_price=book.original_price,
                        promotional_price=book.promotional_price,
                        recorded_at=now_with_tz(),
                        crawl_job_id=result.job_id,
                        status=PriceUpdateStatus.FAILED,
                        error_message=result.error_message,
                    )
                )
        except NotFoundError:
            PRICE_UPDATES.labels(status="book_missing").inc()
            self.log.warning("[{}] Book {} not found, failure not recorded", result.job_id, result.item_id)
            return False
        except Exception as e:
            PRICE_UPDATES.labels(status="transaction_error").inc()
            self.log.error("[{}] Failed to record price failure for book {}: {}", result.job_id, result.item_id, e)
            return False

        PRICE_UPDATES.labels(status="failed").inc()
        return False

    async def get_latest_price(self, book_id: int) -> PriceHistory | None:
        """读取最近一条 SUCCESS 价格记录。"""
        return await self.store.latest_price(book_id)

    async def get_price_history(self, book_id: int, limit: int = HISTORY_LIMIT) -> list[PriceHistory]:
        """按时间倒序读取价格历史。

        Raises:
            NotFoundError: 图书不存在。
        """
        if await self.store.get_book(book_id) is None:
            raise NotFoundError(f"Book {book_id} not found")
        return await self.store.price_history(book_id, limit)
