"""任务调度器模块。

该模块负责两类定时工作：
1. 每日定时价格更新：使用 APScheduler 的 CronTrigger 触发全量价格更新
2. 延迟消息释放：周期性地把已到期的延迟消息（详情抓取重试等）发布到对应通道
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger

if TYPE_CHECKING:
    from ..core.bus import MessageBus
    from ..core.config import Config
    from .price_scheduler import PriceUpdateScheduler


class Scheduler:
    """任务调度器主类。

    Attributes:
        bus: 消息总线实例
        price_scheduler: 价格更新调度器
        config: 应用配置
        log: 日志记录器
    """

    PRICE_UPDATE_JOB_ID = "daily-price-update"

    def __init__(self, *, bus: MessageBus, price_scheduler: PriceUpdateScheduler, config: Config):
        self.bus = bus
        self.price_scheduler = price_scheduler
        self.config = config
        self.scheduler = AsyncIOScheduler()
        self.log = logger.bind(name="Scheduler")

    def start(self) -> None:
        """注册定时价格更新并启动 APScheduler。"""
        settings = self.config.price_update
        if settings.enabled:
            trigger = CronTrigger(hour=settings.cron_hour, minute=settings.cron_minute, timezone=settings.timezone)
            self.scheduler.add_job(
                self.run_price_update,
                trigger,
                id=self.PRICE_UPDATE_JOB_ID,
                replace_existing=True,
                coalesce=True,
                max_instances=1,
            )
            self.log.info(
                "Daily price update scheduled at {:02d}:{:02d} ({})",
                settings.cron_hour,
                settings.cron_minute,
                settings.timezone,
            )
        else:
            self.log.info("Scheduled price update is disabled.")
        self.scheduler.start()

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    async def run_price_update(self) -> str | None:
        """定时触发的全量价格更新，异常只记录日志。"""
        try:
            job_id, total = await self.price_scheduler.trigger_price_update()
        except Exception as e:
            self.log.exception("Scheduled price update failed: {}", e)
            return None
        self.log.info("[{}] Scheduled price update started for {} books", job_id, total)
        return job_id

    async def release_delayed(self) -> int:
        """发布已到期的延迟消息，返回发布数量。"""
        released = await self.bus.release_due()
        if released:
            self.log.debug("Released {} delayed messages", released)
        return released

    async def run(self):
        """启动定时任务并持续释放延迟消息，直到被取消。"""
        interval = self.config.bus.delayed_poll_seconds
        self.start()
        self.log.info("Starting delayed message pump. Interval: {}s", interval)
        try:
            while True:
                try:
                    await self.release_delayed()
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    self.log.exception("Failed to release delayed messages: {}", e)
                await asyncio.sleep(interval)
        except asyncio.CancelledError:
            self.log.info("Cancelled. Exiting.")
        finally:
            self.shutdown()
