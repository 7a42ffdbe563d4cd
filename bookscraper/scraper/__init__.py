"""爬虫模块包。

包含流水线的执行组件：
- ListCrawler / DetailCrawler: 列表与详情爬虫
- PriceCrawler / PriceUpdateConsumer / PriceUpdateScheduler: 价格抓取、应用与调度
- Scheduler: 定时价格更新与延迟消息释放
- Worker: 通道消费者，按映射表把任务交给对应处理函数
"""

from .jobs import JobTracker
from .scheduler import Scheduler
from .services import Services, build_services
from .worker import Worker, build_handlers

__all__ = ["JobTracker", "Scheduler", "Services", "Worker", "build_handlers", "build_services"]
