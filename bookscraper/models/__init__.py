"""数据模型包。

包含流水线使用的所有模型定义：
- SQLAlchemy ORM模型(Job, Book, Author, PriceHistory)及状态枚举
- Pydantic接口数据模型(ListingItem, ProductDetail, PriceQuote)
- 存储层值对象(BookRef, UpsertResult)
"""

from .models import (
    Author,
    Base,
    Book,
    Job,
    JobStatus,
    JobType,
    PriceHistory,
    PriceUpdateStatus,
    now_with_tz,
)
from .records import BookRef, UpsertResult
from .schemas import AuthorInfo, ListingItem, PriceQuote, ProductDetail

__all__ = [
    "Author",
    "AuthorInfo",
    "Base",
    "Book",
    "BookRef",
    "Job",
    "JobStatus",
    "JobType",
    "ListingItem",
    "PriceHistory",
    "PriceQuote",
    "PriceUpdateStatus",
    "ProductDetail",
    "UpsertResult",
    "now_with_tz",
]
