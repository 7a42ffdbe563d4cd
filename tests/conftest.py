"""Pytest 配置和共享 fixtures。"""
# ruff: noqa: E402

import sys
from pathlib import Path

# Add the project root to sys.path so `from bookscraper...` works without installing
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock

import pytest
from cashews import Cache

from bookscraper.core.bus import MemoryBus
from bookscraper.core.client import ListingPage
from bookscraper.core.config import Config
from bookscraper.core.memory import MemoryDataStore
from bookscraper.models import ListingItem, ProductDetail
from bookscraper.scraper.dispatcher import TaskDispatcher
from bookscraper.scraper.jobs import JobTracker

SOURCE = "Tiki"


# ==================== 数据工厂函数 ====================


def make_listing_item(item_id: int, **overrides) -> ListingItem:
    """创建测试用的列表条目"""
    data: dict[str, Any] = {
        "id": item_id,
        "name": f"Book {item_id}",
        "price": 90000,
        "list_price": 100000,
        "original_price": None,
        "thumbnail_url": f"https://img.example/{item_id}.jpg",
        "quantity_sold": {"value": item_id},
    }
    data.update(overrides)
    return ListingItem.model_validate(data)


def make_listing_page(start: int, count: int, *, skipped: int = 0) -> ListingPage:
    """创建测试用的列表页，ID 从 start 开始连续编号"""
    return ListingPage(items=[make_listing_item(i) for i in range(start, start + count)], skipped=skipped)


def make_detail(item_id: int = 100, **overrides) -> ProductDetail:
    """创建测试用的商品详情"""
    data: dict[str, Any] = {
        "id": item_id,
        "name": f"Book {item_id}",
        "description": "<p>A long description</p>",
        "price": 85000,
        "original_price": 100000,
        "quantity_sold": {"value": 12},
        "thumbnail_url": "https://img.example/detail.jpg",
        "authors": [{"id": 501, "name": "Nguyen Nhat Anh", "slug": "nguyen-nhat-anh"}],
    }
    data.update(overrides)
    return ProductDetail.from_payload(data)


def make_config(**sections) -> Config:
    """创建无等待、内存后端的测试配置；sections 按分区覆盖默认值"""
    defaults: dict[str, dict[str, Any]] = {
        "database": {"backend": "memory"},
        "bus": {"transport": "memory", "block_ms": 50},
        "crawler": {"page_delay_seconds": 0, "retry_delay_seconds": 5.0},
        "price_update": {"batch_delay_seconds": 0},
        "marketplace": {"retry_backoff_seconds": 0},
    }
    for name, values in sections.items():
        defaults[name] = {**defaults.get(name, {}), **values}
    return Config(**defaults)


# ==================== Fixtures ====================


@pytest.fixture
def config():
    """返回一个测试用配置"""
    return make_config()


@pytest.fixture
def store():
    """返回一个空的内存存储"""
    return MemoryDataStore()


@pytest.fixture
def bus():
    """返回一个进程内消息总线"""
    return MemoryBus()


@pytest.fixture
def dispatcher(bus):
    return TaskDispatcher(bus)


@pytest.fixture
def jobs(store):
    return JobTracker(store)


@pytest.fixture
def cache():
    """返回一个内存后端的 cashews 缓存"""
    c = Cache()
    c.setup("mem://")
    return c


@pytest.fixture
def mock_client():
    """返回一个带有常用方法的 mock MarketplaceClient"""
    return SimpleNamespace(
        get_listing_page=AsyncMock(return_value=ListingPage()),
        get_product_detail=AsyncMock(),
        get_product_price=AsyncMock(),
    )
