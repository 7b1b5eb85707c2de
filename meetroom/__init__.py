"""
meetroom
~~~~~~~~

多人音视频会议房间协调服务 —— 服务端房间注册表 / 事件中继，
以及客户端的点对点网状连接管理器。
"""

__version__ = "0.1.0"
