from __future__ import annotations

import asyncio
import dataclasses
import time
from contextlib import asynccontextmanager
from functools import wraps
from typing import TYPE_CHECKING, Any

import aiohttp
from loguru import logger
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
    wait_incrementing,
)

from ..models import ListingItem, PriceQuote, ProductDetail
from .exceptions import PermanentRemoteError, TransientRemoteError
from .metrics import API_REQUEST_DURATION

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator

    from aiolimiter import AsyncLimiter
    from tenacity import RetryCallState

    from .config import MarketplaceConfig

RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


@dataclasses.dataclass(slots=True)
class ListingPage:
    """列表接口单页解析结果。

    Attributes:
        items: 可解析的商品概要
        skipped: 无法解析而被丢弃的条目数
    """

    items: list[ListingItem] = dataclasses.field(default_factory=list)
    skipped: int = 0


def _wait_after_error(base: float):
    """
    tenacity的等待回调函数工厂。

    429错误交由全局冷却逻辑处理，其他错误按 base, 2*base, ... 递增等待。
    """
    incrementing = wait_incrementing(start=base, increment=base)

    def wait(retry_state: RetryCallState) -> float:
        outcome = retry_state.outcome
        exc = outcome.exception() if outcome is not None else None
        if isinstance(exc, TransientRemoteError) and exc.status == 429:
            return wait_fixed(0)(retry_state)
        return incrementing(retry_state)

    return wait


def with_limit_and_retry(func):
    """为客户端方法应用限流与有限次数重试，并包含全局冷却逻辑。

    只有 TransientRemoteError 会被重试，重试次数由 ``fetch_retries`` 决定。
    """

    @wraps(func)
    async def wrapper(self: MarketplaceClient, *args, **kwargs):
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.config.fetch_retries + 1),
            wait=_wait_after_error(self.config.retry_backoff_seconds),
            retry=retry_if_exception_type(TransientRemoteError),
            reraise=True,
        ):
            with attempt:
                try:
                    async with self.rate_limiter():
                        return await func(self, *args, **kwargs)
                except TransientRemoteError as e:
                    if e.status == 429:
                        wait_seconds = self._cooldown_seconds_429
                        logger.warning(
                            "Received HTTP 429. Activating global cooldown for {:.1f} seconds.",
                            wait_seconds,
                        )
                        await self.set_cooldown(wait_seconds)
                        await asyncio.sleep(wait_seconds)
                    else:
                        logger.debug("Transient error in {}: {}", func.__name__, e)
                    raise

    return wrapper


class MarketplaceClient:
    """电商平台接口客户端，带请求限流、并发控制与有限重试。

    不跟随重定向；请求超时由 ``request_timeout`` 控制。
    网络层错误与 408/429/5xx 视为可重试，其余 4xx 与重定向视为永久错误。

    Attributes:
        config (MarketplaceConfig): 平台接口配置。
        limiter (AsyncLimiter): 用于控制每秒请求数的限流器。
        semaphore (asyncio.Semaphore): 用于控制最大并发数的信号量。
    """

    def __init__(
        self,
        config: MarketplaceConfig,
        *,
        limiter: AsyncLimiter,
        semaphore: asyncio.Semaphore,
        cooldown_seconds_429: float,
        session: aiohttp.ClientSession | None = None,
    ):
        """初始化客户端。

        Args:
            config: 平台接口配置。
            limiter: 速率限制器，用于控制每秒请求数。
            semaphore: 信号量，用于控制最大并发数。
            cooldown_seconds_429: 触发429时的全局冷却秒数。
            session: 可选的外部 aiohttp 会话；为 None 时在 __aenter__ 中创建。
        """
        self.config = config
        self._limiter = limiter
        self._semaphore = semaphore
        self._cooldown_seconds_429 = cooldown_seconds_429
        self._cooldown_until: float = 0.0
        self._cooldown_lock = asyncio.Lock()
        self._session = session
        self._owns_session = session is None

    async def set_cooldown(self, duration: float):
        """设置全局冷却时间，防止多个任务同时设置。"""
        async with self._cooldown_lock:
            cooldown_end_time = time.monotonic() + duration
            self._cooldown_until = max(self._cooldown_until, cooldown_end_time)

    @property
    def limiter(self) -> AsyncLimiter:
        """获取速率限制器。"""
        return self._limiter

    @property
    def semaphore(self) -> asyncio.Semaphore:
        """获取信号量。"""
        return self._semaphore

    @asynccontextmanager
    async def rate_limiter(self) -> AsyncGenerator[None, None]:
        """获取速率限制和并发控制的上下文管理器，并处理全局冷却。"""
        now = time.monotonic()
        if now < self._cooldown_until:
            wait_time = self._cooldown_until - now
            logger.debug("Global cooldown active. Waiting for {:.1f} seconds.", wait_time)
            await asyncio.sleep(wait_time)

        async with self.limiter:
            async with self.semaphore:
                yield

    def _headers(self) -> dict[str, str]:
        return {
            "User-Agent": self.config.user_agent,
            "Accept": self.config.accept,
            "Accept-Language": self.config.accept_language,
            "Referer": f"{self.config.origin}/",
            "Origin": self.config.origin,
        }

    async def _get_json(self, endpoint: str, url: str, params: dict[str, Any] | None = None) -> Any:
        if self._session is None:
            raise RuntimeError("MarketplaceClient is not started; use 'async with'.")

        start = time.perf_counter()
        status_label = "network_error"
        try:
            async with self._session.get(url, params=params, allow_redirects=False) as resp:
                status_label = str(resp.status)
                if 300 <= resp.status < 400:
                    raise PermanentRemoteError(
                        f"unexpected redirect to {resp.headers.get('Location', '?')}", status=resp.status
                    )
                if resp.status in RETRYABLE_STATUSES:
                    raise TransientRemoteError(f"HTTP {resp.status} from {endpoint}", status=resp.status)
                if resp.status >= 400:
                    raise PermanentRemoteError(f"HTTP {resp.status} from {endpoint}", status=resp.status)
                data = await resp.json(content_type=None)
                status_label = "ok"
                return data
        except (aiohttp.ClientConnectionError, aiohttp.ClientPayloadError, TimeoutError) as e:
            raise TransientRemoteError(f"{type(e).__name__}: {e}") from e
        except ValueError as e:
            raise PermanentRemoteError(f"invalid JSON from {endpoint}: {e}") from e
        finally:
            API_REQUEST_DURATION.labels(endpoint=endpoint, status=status_label).observe(time.perf_counter() - start)

    @with_limit_and_retry
    async def get_listing_page(self, page: int, page_size: int) -> ListingPage:
        """获取列表接口的一页商品。

        Args:
            page: 页码，从 1 开始。
            page_size: 每页条目数。

        Returns:
            ListingPage: 该页可解析的商品与被丢弃的条目数；items 为空表示没有更多数据。
        """
        params = {
            "limit": page_size,
            "include": "advertisement",
            "aggregations": 2,
            "version": "home-persionalized",
            "category": self.config.category,
            "page": page,
            "urlKey": self.config.url_key,
        }
        data = await self._get_json("listing", self.config.listing_url, params)
        if not isinstance(data, dict):
            raise PermanentRemoteError("listing response is not a JSON object")
        return parse_listing(data.get("data") or [])

    @with_limit_and_retry
    async def get_product_detail(self, product_id: int) -> ProductDetail | None:
        """获取商品详情；接口返回空内容时返回 None。"""
        data = await self._get_json("detail", self.detail_url(product_id), {"platform": "web", "version": 3})
        if not data or not isinstance(data, dict) or "id" not in data:
            return None
        return ProductDetail.from_payload(data)

    @with_limit_and_retry
    async def get_product_price(self, product_id: int) -> PriceQuote:
        """获取商品当前价格。

        Raises:
            PermanentRemoteError: 返回内容中没有价格。
        """
        data = await self._get_json("detail", self.detail_url(product_id), {"platform": "web", "version": 3})
        if not data or not isinstance(data, dict):
            raise PermanentRemoteError(f"empty detail payload for product {product_id}")
        try:
            return PriceQuote.from_payload(data)
        except ValueError as e:
            raise PermanentRemoteError(f"product {product_id}: {e}") from e

    def detail_url(self, product_id: int) -> str:
        return self.config.detail_url.format(product_id=product_id)

    async def __aenter__(self) -> MarketplaceClient:
        if self._session is None:
            self._session = aiohttp.ClientSession(
                headers=self._headers(),
                timeout=aiohttp.ClientTimeout(total=self.config.request_timeout),
            )
        return self

    async def __aexit__(self, exc_type=None, exc_val=None, exc_tb=None):
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None


def parse_listing(raw_items: list[Any]) -> ListingPage:
    """校验列表条目，丢弃缺少ID等无法解析的条目并计数。"""
    page = ListingPage()
    for raw in raw_items:
        try:
            page.items.append(ListingItem.model_validate(raw))
        except ValueError as e:
            logger.warning("Skipping malformed listing item: {}", e)
            page.skipped += 1
    return page
