"""应用程序配置管理模块。

该模块负责从TOML配置文件中加载应用程序的各项配置，
包括数据库连接、Redis连接、电商平台接口、爬虫参数、价格更新调度、消息总线等。
支持通过环境变量覆盖配置（例如 DATABASE__HOST）。
"""

import tomllib
from pathlib import Path
from typing import Any, Literal
from urllib.parse import quote_plus

from pydantic import (
    BaseModel,
    Field,
    PostgresDsn,
    RedisDsn,
    ValidationError,
    computed_field,
)
from pydantic.fields import FieldInfo
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict


class DatabaseConfig(BaseModel):
    """数据库配置模型"""

    backend: Literal["postgres", "memory"] = "postgres"
    host: str = "localhost"
    port: int = 5432
    username: str = "admin"
    password: str = "123456"
    db_name: str = "bookscraper"


class RedisConfig(BaseModel):
    """Redis配置模型"""

    host: str = "localhost"
    port: int = 6379
    username: str = ""
    password: str = ""
    db: int = 0


class MarketplaceConfig(BaseModel):
    """电商平台接口配置模型"""

    source_name: str = "Tiki"
    listing_url: str = "https://tiki.vn/api/personalish/v1/blocks/listings"
    detail_url: str = "https://tiki.vn/api/v2/products/{product_id}"
    origin: str = "https://tiki.vn"
    category: str = "839"
    url_key: str = "sach-van-hoc"
    user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    )
    accept: str = "application/json, text/plain, */*"
    accept_language: str = "vi-VN,vi;q=0.9,en-US;q=0.8,en;q=0.7"
    request_timeout: float = Field(10.0, gt=0)
    fetch_retries: int = Field(2, ge=0)
    retry_backoff_seconds: float = Field(2.0, ge=0)


class RateLimitConfig(BaseModel):
    """请求频率限制配置模型"""

    rps: int = Field(5, gt=0)
    concurrency: int = Field(4, gt=0)
    cooldown_seconds_429: float = Field(10.0, gt=0)


class CrawlerConfig(BaseModel):
    """列表/详情爬虫配置模型"""

    page_size: int = Field(40, gt=0)
    max_pages: int = Field(3, gt=0)
    bulk_batch_size: int = Field(100, gt=0)
    page_delay_seconds: float = Field(0.5, ge=0)
    max_retry_attempts: int = Field(3, gt=0)
    retry_delay_seconds: float = Field(5.0, ge=0)
    recrawl_limit: int = Field(100, gt=0)


class PriceUpdateConfig(BaseModel):
    """价格更新调度配置模型"""

    enabled: bool = True
    batch_size: int = Field(100, gt=0)
    batch_delay_seconds: float = Field(2.0, ge=0)
    cron_hour: int = Field(7, ge=0, le=23)
    cron_minute: int = Field(0, ge=0, le=59)
    timezone: str = "Asia/Ho_Chi_Minh"


class BusConfig(BaseModel):
    """消息总线配置模型"""

    transport: Literal["redis", "memory"] = "redis"
    stream_prefix: str = "bookscraper:tasks"
    consumer_group: str = "bookscraper-workers"
    read_count: int = Field(10, gt=0)
    block_ms: int = Field(5000, gt=0)
    max_len: int = Field(100000, gt=0)
    delayed_key: str = "bookscraper:delayed"
    delayed_poll_seconds: float = Field(1.0, gt=0)
    workers_per_channel: int = Field(2, gt=0)


class CacheConfig(BaseModel):
    """缓存配置模型"""

    backend: Literal["memory", "redis"] = "memory"
    max_size: int = Field(100000, gt=0)
    ttl_seconds: int = Field(86400, gt=0)


class MetricsConfig(BaseModel):
    """Prometheus 指标导出配置"""

    enabled: bool = False
    port: int = 9108


class PydanticConfig(BaseSettings):
    """Pydantic总配置模型"""

    model_config = SettingsConfigDict(
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    marketplace: MarketplaceConfig = Field(default_factory=MarketplaceConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    crawler: CrawlerConfig = Field(default_factory=CrawlerConfig)
    price_update: PriceUpdateConfig = Field(default_factory=PriceUpdateConfig)
    bus: BusConfig = Field(default_factory=BusConfig)
    cache: CacheConfig = Field(default_factory=CacheConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return (
            init_settings,
            env_settings,
            TomlConfigSettingsSource(settings_cls),
        )

    @computed_field
    @property
    def database_url(self) -> PostgresDsn:
        """生成PostgreSQL数据库连接URL"""
        return PostgresDsn(
            f"postgresql+asyncpg://{quote_plus(self.database.username)}:{quote_plus(self.database.password)}"
            f"@{self.database.host}:{self.database.port}/{self.database.db_name}"
        )

    @computed_field
    @property
    def redis_url(self) -> RedisDsn:
        """生成Redis连接URL"""
        if self.redis.username and self.redis.password:
            return RedisDsn(
                f"redis://{quote_plus(self.redis.username)}:{quote_plus(self.redis.password)}"
                f"@{self.redis.host}:{self.redis.port}/{self.redis.db}"
            )
        if self.redis.password:
            return RedisDsn(
                f"redis://:{quote_plus(self.redis.password)}@{self.redis.host}:{self.redis.port}/{self.redis.db}"
            )
        return RedisDsn(f"redis://{self.redis.host}:{self.redis.port}/{self.redis.db}")


class TomlConfigSettingsSource(PydanticBaseSettingsSource):
    """TOML 配置文件加载源"""

    def get_field_value(self, field: FieldInfo, field_name: str) -> tuple[Any, str, bool]:
        raise NotImplementedError

    def __call__(self) -> dict[str, Any]:
        config_file = Path(__file__).resolve().parent.parent.parent / "config.toml"
        if not config_file.exists():
            return {}
        try:
            with config_file.open("rb") as f:
                return tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError):
            return {}


class Config:
    """应用程序配置类。

    负责加载和管理应用程序的所有配置项，包括：
    - 数据库与Redis连接配置
    - 电商平台接口与限流配置
    - 爬虫、价格更新与消息总线配置

    Attributes:
        pydantic_config (PydanticConfig): Pydantic应用配置模型
    """

    pydantic_config: PydanticConfig

    def __init__(self, **overrides: Any):
        """初始化配置对象。

        配置加载优先级：
        1. 显式传入的 overrides（主要用于测试）
        2. 环境变量 (例如 DATABASE__HOST)
        3. config.toml 配置文件

        Args:
            **overrides: 按配置分区传入的覆盖值，例如 ``crawler={"max_pages": 2}``。
        """
        try:
            self.pydantic_config = PydanticConfig(**overrides)
        except ValidationError as e:
            raise ValueError(f"配置验证失败: {e}") from e

    @property
    def database_url(self) -> str:
        """获取数据库连接URL。"""
        return str(self.pydantic_config.database_url)

    @property
    def database_backend(self) -> Literal["postgres", "memory"]:
        """获取数据存储后端类型。"""
        return self.pydantic_config.database.backend

    @property
    def redis_url(self) -> str:
        """获取Redis连接URL。"""
        return str(self.pydantic_config.redis_url)

    @property
    def marketplace(self) -> MarketplaceConfig:
        return self.pydantic_config.marketplace

    @property
    def source_name(self) -> str:
        """获取数据来源名称（自然键的一部分）。"""
        return self.pydantic_config.marketplace.source_name

    @property
    def rps_limit(self) -> int:
        """获取每秒请求限制。"""
        return self.pydantic_config.rate_limit.rps

    @property
    def concurrency_limit(self) -> int:
        """获取并发限制。"""
        return self.pydantic_config.rate_limit.concurrency

    @property
    def cooldown_seconds_429(self) -> float:
        """获取429响应后的冷却时间（秒）。"""
        return self.pydantic_config.rate_limit.cooldown_seconds_429

    @property
    def crawler(self) -> CrawlerConfig:
        return self.pydantic_config.crawler

    @property
    def price_update(self) -> PriceUpdateConfig:
        return self.pydantic_config.price_update

    @property
    def bus(self) -> BusConfig:
        return self.pydantic_config.bus

    @property
    def bus_transport(self) -> Literal["redis", "memory"]:
        """获取消息总线传输方式。"""
        return self.pydantic_config.bus.transport

    @property
    def cache_backend(self) -> Literal["memory", "redis"]:
        """获取缓存后端类型。"""
        return self.pydantic_config.cache.backend

    @property
    def cache_max_size(self) -> int:
        """获取缓存最大条目数。"""
        return self.pydantic_config.cache.max_size

    @property
    def cache_ttl_seconds(self) -> int:
        """获取缓存条目过期时间（秒）。"""
        return self.pydantic_config.cache.ttl_seconds

    @property
    def metrics_enabled(self) -> bool:
        return self.pydantic_config.metrics.enabled

    @property
    def metrics_port(self) -> int:
        return self.pydantic_config.metrics.port
