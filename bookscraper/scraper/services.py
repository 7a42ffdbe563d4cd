"""流水线组件装配。

Container 管理外部资源，Services 持有在这些资源之上构建的流水线组件。
"""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING

from .detail_crawler import AuthorResolver, DetailCrawler
from .dispatcher import TaskDispatcher
from .jobs import JobTracker
from .list_crawler import ListCrawler
from .price_consumer import PriceUpdateConsumer
from .price_crawler import PriceCrawler
from .price_scheduler import PriceUpdateScheduler

if TYPE_CHECKING:
    from ..core import Container


@dataclasses.dataclass(slots=True)
class Services:
    """流水线组件集合。"""

    jobs: JobTracker
    dispatcher: TaskDispatcher
    list_crawler: ListCrawler
    detail_crawler: DetailCrawler
    price_crawler: PriceCrawler
    price_consumer: PriceUpdateConsumer
    price_scheduler: PriceUpdateScheduler


def build_services(container: Container) -> Services:
    """基于已初始化的容器构建全部流水线组件。

    Raises:
        RuntimeError: 容器尚未完成初始化。
    """
    if container.datastore is None or container.bus is None or container.client is None or container.cache is None:
        raise RuntimeError("Container is not set up properly.")

    config = container.config
    store = container.datastore
    jobs = JobTracker(store)
    dispatcher = TaskDispatcher(container.bus)

    return Services(
        jobs=jobs,
        dispatcher=dispatcher,
        list_crawler=ListCrawler(client=container.client, store=store, jobs=jobs, dispatcher=dispatcher, config=config),
        detail_crawler=DetailCrawler(
            client=container.client,
            store=store,
            jobs=jobs,
            dispatcher=dispatcher,
            authors=AuthorResolver(store, container.cache, config.cache_ttl_seconds),
            config=config,
        ),
        price_crawler=PriceCrawler(client=container.client, dispatcher=dispatcher),
        price_consumer=PriceUpdateConsumer(store=store, jobs=jobs),
        price_scheduler=PriceUpdateScheduler(store=store, jobs=jobs, dispatcher=dispatcher, config=config),
    )
