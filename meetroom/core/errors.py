"""
meetroom.core.errors
~~~~~~~~~~~~~~~~~~~~

项目内统一的异常层级。服务端协议错误不会抛出到连接之外，
而是转换为 ``error`` 信令帧；客户端异常直接抛给调用方。
"""
from __future__ import annotations


class MeetroomError(Exception):
    """所有业务异常的基类。"""


class ProtocolError(MeetroomError):
    """客户端发送了不合法或不允许的信令消息。

    Attributes:
        code: 机器可读的错误码，会原样写入 ``error`` 帧。
    """

    def __init__(self, code: str, detail: str) -> None:
        super().__init__(detail)
        self.code = code
        self.detail = detail


class SignalingError(MeetroomError):
    """信令通道建立失败或已断开。对参会是致命的，不自动重试。"""


class MediaDeviceError(MeetroomError):
    """本地采集设备不可用（无设备 / 权限被拒 / 打开失败）。"""


class NegotiationError(MeetroomError):
    """点对点连接协商失败（超时或对端拒绝）。"""
