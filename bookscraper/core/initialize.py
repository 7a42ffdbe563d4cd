"""项目初始化模块。

该模块包含应用程序启动时需要执行的初始化任务：
加载配置、初始化容器资源与创建数据库表。
"""

from __future__ import annotations

from typing import Any

from loguru import logger

from ..models import Base
from .config import Config
from .container import Container


async def initialize_application(**overrides: Any) -> Container:
    """初始化整个应用程序。

    该函数封装了应用启动所需的所有核心初始化步骤：
    1. 加载配置。
    2. 创建并设置依赖注入容器。
    3. 创建数据库表。

    Args:
        **overrides: 传给 Config 的覆盖配置。

    Returns:
        Container: 初始化完成的容器实例。
    """
    logger.info("Initializing application...")

    app_config = Config(**overrides)

    container = Container(config=app_config)
    await container.setup()

    try:
        await create_tables(container)
    except Exception:
        await container.teardown()
        raise

    logger.info("Application initialized successfully.")
    return container


async def create_tables(container: Container) -> None:
    """创建数据库表。

    使用SQLAlchemy的Base.metadata.create_all方法在数据库中创建所有定义的模型表；
    内存存储后端时跳过。

    Args:
        container: 依赖注入容器实例，提供数据库引擎。
    """
    if container.db_engine is None:
        logger.info("No database engine configured; skipping table creation.")
        return

    logger.info("Initializing database tables...")
    try:
        async with container.db_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except Exception as e:
        logger.exception("Failed to create database tables: {}", e)
        raise

    logger.info("Database tables created successfully.")
