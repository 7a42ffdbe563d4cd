"""依赖注入容器模块。

该模块实现了应用程序的依赖注入容器，负责统一管理和初始化
各种外部资源，包括数据库连接、Redis客户端、消息总线、平台接口客户端与缓存。
"""

from __future__ import annotations

from asyncio import Semaphore
from typing import TYPE_CHECKING

import redis.asyncio as redis
from aiolimiter import AsyncLimiter
from cashews import Cache, add_prefix
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .bus import MemoryBus, RedisStreamsBus
from .client import MarketplaceClient
from .datastore import DataStore
from .memory import MemoryDataStore

if TYPE_CHECKING:
    from .bus import MessageBus
    from .config import Config
    from .datastore import Store


class Container:
    """依赖注入容器。

    负责管理应用程序的所有外部依赖，提供统一的资源初始化和清理接口。

    Attributes:
        config (Config): 应用程序配置对象
        limiter (AsyncLimiter): 漏桶算法实现的异步限流器
        semaphore (Semaphore): 并发请求数信号量
        client (MarketplaceClient): 带限流与重试的平台接口客户端
        db_engine (AsyncEngine): SQLAlchemy异步数据库引擎
        async_sessionmaker: 异步数据库会话工厂
        redis_client (redis.Redis): Redis异步客户端
        bus (MessageBus): 消息总线
        datastore (Store): 存储层实例
        cache (Cache): cashews 缓存实例
    """

    def __init__(self, config: Config):
        """初始化容器。

        Args:
            config: 应用程序的配置对象。
        """
        self.config = config

        self.limiter: AsyncLimiter | None = None
        self.semaphore: Semaphore | None = None
        self.client: MarketplaceClient | None = None
        self.db_engine: AsyncEngine | None = None
        self.async_sessionmaker: async_sessionmaker[AsyncSession] | None = None
        self.redis_client: redis.Redis | None = None
        self.bus: MessageBus | None = None
        self.datastore: Store | None = None
        self.cache: Cache | None = None

    async def setup(self):
        """异步初始化容器资源。

        依次初始化以下资源：
        1. AsyncLimiter 与 Semaphore - 用于平台接口请求限流
        2. MarketplaceClient - 带速率与并发限制的平台接口客户端
        3. PostgreSQL异步数据库引擎和会话工厂（memory 后端时使用内存存储）
        4. Redis异步客户端与消息总线（memory 传输时使用进程内总线）
        5. cashews 缓存

        如果任何步骤失败，会自动调用teardown()清理已初始化的资源。

        Raises:
            Exception: 当资源初始化失败时抛出异常。
        """
        logger.info("Initializing container resources...")
        try:
            self.limiter = AsyncLimiter(1, time_period=1 / self.config.rps_limit)
            self.semaphore = Semaphore(self.config.concurrency_limit)
            logger.info("AioLimiter initialized with a rate of {} RPS.", self.config.rps_limit)
            self.client = await MarketplaceClient(
                self.config.marketplace,
                limiter=self.limiter,
                semaphore=self.semaphore,
                cooldown_seconds_429=self.config.cooldown_seconds_429,
            ).__aenter__()
            logger.info("Marketplace client started.")

            if self.config.database_backend == "postgres":
                self.db_engine = create_async_engine(self.config.database_url, echo=False)
                self.async_sessionmaker = async_sessionmaker(
                    bind=self.db_engine, class_=AsyncSession, expire_on_commit=False
                )
                self.datastore = DataStore(self.async_sessionmaker)
                logger.info("PostgreSQL AsyncEngine created.")
            else:
                self.datastore = MemoryDataStore()
                logger.warning("Using in-memory datastore; data will not survive a restart.")

            if self.config.bus_transport == "redis" or self.config.cache_backend == "redis":
                self.redis_client = redis.from_url(self.config.redis_url)
                await self.redis_client.ping()  # type: ignore
                logger.info("Redis client connected successfully.")

            if self.config.bus_transport == "redis":
                assert self.redis_client is not None
                self.bus = RedisStreamsBus(self.redis_client, bus_config=self.config.bus)
            else:
                self.bus = MemoryBus()
                logger.warning("Using in-memory message bus; delayed retries will not survive a restart.")

            self.cache = Cache()
            if self.config.cache_backend == "memory":
                self.cache.setup(f"mem://?size={self.config.cache_max_size}")
            else:
                self.cache.setup(self.config.redis_url, middlewares=(add_prefix("bookscraper:"),))

            logger.info("Container resources initialized successfully.")

        except Exception as e:
            logger.exception("Failed to initialize container resources: {}", e)
            await self.teardown()
            raise

    async def teardown(self):
        """异步关闭并清理所有资源。

        按相反顺序安全关闭所有已初始化的资源，该方法是幂等的，可以安全地多次调用。
        """
        logger.info("Tearing down container resources...")

        if self.cache is not None:
            await self.cache.close()
            self.cache = None
        if self.bus is not None:
            await self.bus.close()
            self.bus = None
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
            logger.info("Redis client closed.")
        if self.datastore is not None:
            await self.datastore.close()
            self.datastore = None
        if self.db_engine is not None:
            await self.db_engine.dispose()
            self.db_engine = None
            logger.info("PostgreSQL AsyncEngine disposed.")
        if self.client is not None:
            await self.client.__aexit__()
            self.client = None
            logger.info("Marketplace client closed.")

        logger.info("Container resources torn down successfully.")
