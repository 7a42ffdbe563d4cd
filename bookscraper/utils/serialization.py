from dataclasses import fields, is_dataclass
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

import orjson


def to_jsonable(obj: Any) -> Any:
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj

    if isinstance(obj, Enum):
        return obj.value

    if isinstance(obj, datetime):
        return obj.isoformat()

    if isinstance(obj, UUID):
        return str(obj)

    if is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_jsonable(getattr(obj, f.name)) for f in fields(obj)}

    if isinstance(obj, dict):
        return {str(k): to_jsonable(v) for k, v in obj.items()}

    if isinstance(obj, (list, tuple, set, frozenset)):
        return [to_jsonable(v) for v in obj]

    return str(obj)


def dumps_payload(payload: dict[str, Any]) -> bytes:
    """将消息体编码为 JSON 字节串。"""
    return orjson.dumps(payload, default=to_jsonable, option=orjson.OPT_NON_STR_KEYS)


def loads_payload(raw: bytes | str) -> dict[str, Any]:
    """解码消息体；非 JSON 对象时抛出 ValueError。"""
    data = orjson.loads(raw)
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object, got {type(data).__name__}")
    return data
