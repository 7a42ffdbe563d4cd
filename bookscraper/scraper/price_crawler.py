"""价格爬虫模块。

抓取单个商品的当前价格并把结果作为消息发布到结果通道，
本身不写目录；成功与失败都以一条结果消息的形式交给价格更新消费者。
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from loguru import logger

from ..core.exceptions import PermanentRemoteError
from ..models import PriceUpdateStatus
from .tasks import PriceCrawlResult

if TYPE_CHECKING:
    from ..core.client import MarketplaceClient
    from .dispatcher import TaskDispatcher
    from .tasks import PriceCrawlTask


class PriceCrawler:
    """价格爬虫。

    Attributes:
        client: 平台接口客户端
        dispatcher: 任务分发器
    """

    def __init__(self, *, client: MarketplaceClient, dispatcher: TaskDispatcher):
        self.client = client
        self.dispatcher = dispatcher
        self.log = logger.bind(name="PriceCrawler")

    async def handle(self, task: PriceCrawlTask) -> None:
        await self.crawl_price(task.item_id, task.external_id, task.source, task.job_id, task.retry_count)

    async def crawl_price(
        self,
        item_id: int,
        external_id: str,
        source: str,
        job_id: str,
        retry_count: int = 0,
    ) -> PriceCrawlResult:
        """抓取价格并发布结果消息。

        external_id 非数字、接口错误、返回内容没有价格都会产出一条 FAILED 结果；
        结果消息发布失败时异常向上抛出，由 Worker 记录。

        Args:
            item_id: 图书ID。
            external_id: 平台商品ID。
            source: 数据来源。
            job_id: 价格更新任务ID。
            retry_count: 已重试次数，仅用于日志。

        Returns:
            PriceCrawlResult: 已发布的结果消息。
        """
        try:
            if not external_id.isdigit():
                raise PermanentRemoteError(f"invalid external id {external_id!r}")
            quote = await self.client.get_product_price(int(external_id))
        except Exception as e:
            self.log.warning(
                "[{}] Price crawl failed for book {} ({}), attempt {}: {}", job_id, item_id, external_id, retry_count, e
            )
            result = PriceCrawlResult(
                item_id=item_id,
                external_id=external_id,
                source=source,
                job_id=job_id,
                status=PriceUpdateStatus.FAILED,
                error_message=str(e) or type(e).__name__,
            )
        else:
            result = PriceCrawlResult(
                item_id=item_id,
                external_id=external_id,
                source=source,
                job_id=job_id,
                new_price=quote.promotional_price,
                original_price=quote.original_price,
                status=PriceUpdateStatus.SUCCESS,
            )

        await self.dispatcher.dispatch(result)
        return result
