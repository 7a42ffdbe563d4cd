"""电商平台接口数据模型。

使用 Pydantic 校验并规整列表接口、详情接口返回的 JSON，
屏蔽字段缺失与嵌套结构（如 ``quantity_sold.value``）的差异。
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator


def _unwrap_quantity(value: Any) -> Any:
    if isinstance(value, dict):
        return value.get("value") or 0
    return value or 0


class ListingItem(BaseModel):
    """列表接口中的单个商品概要。

    Attributes:
        id: 平台商品ID
        name: 书名
        price: 当前售价
        list_price: 标价
        original_price: 原价
        thumbnail_url: 缩略图链接
        quantity_sold: 销量
    """

    model_config = ConfigDict(extra="ignore")

    id: int
    name: str = ""
    price: float | None = None
    list_price: float | None = None
    original_price: float | None = None
    thumbnail_url: str | None = None
    quantity_sold: int = 0

    @field_validator("quantity_sold", mode="before")
    @classmethod
    def _quantity(cls, value: Any) -> Any:
        return _unwrap_quantity(value)

    def to_book_values(self, source: str) -> dict[str, Any]:
        """转换为目录行的 upsert 字段。

        Args:
            source: 数据来源名称。

        Returns:
            dict[str, Any]: 目录行字段字典。
        """
        return {
            "external_id": str(self.id),
            "source": source,
            "title": self.name,
            "original_price": self.original_price or self.list_price or 0,
            "promotional_price": self.price or 0,
            "quantity_sold": self.quantity_sold,
            "image": self.thumbnail_url,
            "is_from_crawler": True,
        }


class AuthorInfo(BaseModel):
    """详情接口中的作者条目"""

    model_config = ConfigDict(extra="ignore")

    id: int
    name: str
    slug: str = ""

    @field_validator("slug", mode="before")
    @classmethod
    def _slug(cls, value: Any) -> Any:
        return value or ""


class ProductDetail(BaseModel):
    """详情接口返回的商品信息（已规整）。"""

    id: int
    name: str = ""
    description: str = ""
    original_price: float | None = None
    promotional_price: float | None = None
    quantity_sold: int = 0
    image: str | None = None
    authors: list[AuthorInfo] = []

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> ProductDetail:
        """从详情接口原始 JSON 构造。

        - 简介优先取 ``description``，缺失时取 ``short_description``
        - 销量优先取 ``quantity_sold.value``，缺失时取 ``all_time_quantity_sold``
        - 作者仅保留同时具有 id 与 name 的条目，其余丢弃

        Args:
            data: 详情接口返回的 JSON 对象。

        Returns:
            ProductDetail: 规整后的商品详情。
        """
        authors: list[AuthorInfo] = []
        for raw in data.get("authors") or []:
            if not isinstance(raw, dict) or not raw.get("id") or not raw.get("name"):
                continue
            try:
                authors.append(AuthorInfo.model_validate(raw))
            except ValidationError:
                continue

        return cls(
            id=data["id"],
            name=data.get("name") or "",
            description=data.get("description") or data.get("short_description") or "",
            original_price=data.get("original_price"),
            promotional_price=data.get("price"),
            quantity_sold=_unwrap_quantity(data.get("quantity_sold")) or data.get("all_time_quantity_sold") or 0,
            image=data.get("thumbnail_url"),
            authors=authors,
        )


class PriceQuote(BaseModel):
    """单个商品的当前价格。"""

    promotional_price: float
    original_price: float

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> PriceQuote:
        """原价缺失时回退为当前售价；没有售价时抛出 ValueError。"""
        price = data.get("price")
        if price is None:
            raise ValueError("payload has no price")
        return cls(promotional_price=price, original_price=data.get("original_price") or price)
