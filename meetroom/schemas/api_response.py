"""
meetroom.schemas.api_response
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

REST 接口的统一信封 ``{"code": ..., "msg": ..., "data": ...}``。
信令 WebSocket 不使用它，协议错误走 ``error`` 帧。
"""
from __future__ import annotations

from typing import Any, Generic, TypeVar

from pydantic import BaseModel

DataT = TypeVar("DataT")


class ApiResponse(BaseModel, Generic[DataT]):
    code: int = 200
    msg: str = "success"
    data: DataT

    @classmethod
    def ok(cls, data: DataT) -> ApiResponse[DataT]:
        return cls(data=data)

    @classmethod
    def fail(cls, msg: str, code: int = 500) -> ApiResponse[Any]:
        """失败时 ``data`` 固定为 ``None``，``code`` 与 HTTP 状态码一致。"""
        return cls(code=code, msg=msg, data=None)
