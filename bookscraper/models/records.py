"""存储层返回的轻量值对象。"""

from __future__ import annotations

import dataclasses


@dataclasses.dataclass(slots=True, frozen=True)
class BookRef:
    """价格更新所需的最小图书信息。

    Attributes:
        id: 图书ID
        external_id: 平台商品ID
        source: 数据来源
    """

    id: int
    external_id: str
    source: str


@dataclasses.dataclass(slots=True, frozen=True)
class UpsertResult:
    """批量 upsert 的结果统计。

    Attributes:
        inserted: 新插入行数
        updated: 已存在并被更新的行数
    """

    inserted: int = 0
    updated: int = 0
