"""
meetroom.client
~~~~~~~~~~~~~~~

会议客户端：信令通道、点对点网状连接管理、本地媒体控制。
"""
from meetroom.client.connection import ConnectionState, MediaConnection
from meetroom.client.media import LocalMediaController, LocalTrackSet
from meetroom.client.mesh import PeerMeshManager
from meetroom.client.session import ClientSession
from meetroom.client.signaling import SignalingChannel

__all__ = [
    "ClientSession",
    "ConnectionState",
    "LocalMediaController",
    "LocalTrackSet",
    "MediaConnection",
    "PeerMeshManager",
    "SignalingChannel",
]
