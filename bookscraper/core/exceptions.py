"""异常定义模块。

按错误来源划分异常层次：
- 调用方输入错误（非法ID、非法参数）
- 状态机错误（任务状态不允许该操作）
- 存储层错误（记录不存在、自然键冲突）
- 远程接口错误（可重试的瞬时错误 / 不可重试的永久错误）
"""

from __future__ import annotations


class ScraperError(Exception):
    """所有业务异常的基类。"""


class InvalidArgumentError(ScraperError, ValueError):
    """参数非法，例如任务ID格式错误或 limit 超出范围。"""


class InvalidStateError(ScraperError):
    """当前状态不允许执行该操作。"""


class NotFoundError(ScraperError, LookupError):
    """目标记录不存在。"""


class DuplicateKeyError(ScraperError):
    """插入时违反唯一自然键约束。"""


class RemoteError(ScraperError):
    """远程接口请求失败。

    Attributes:
        status: HTTP状态码，网络层错误时为 None。
    """

    def __init__(self, message: str, *, status: int | None = None):
        super().__init__(message)
        self.status = status


class TransientRemoteError(RemoteError):
    """可重试的远程错误：连接重置/拒绝、超时、DNS失败、408/429/5xx。"""


class PermanentRemoteError(RemoteError):
    """不可重试的远程错误：404/403/其他4xx、重定向。"""
