"""
meetroom.schemas.rooms
~~~~~~~~~~~~~~~~~~~~~~

房间相关的 REST 响应模型。
"""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class ParticipantData(BaseModel):
    """房间成员摘要。"""

    participant_id: str = Field(..., description="媒体层 peer ID")
    name: str = Field(..., description="显示名")
    joined_at: datetime = Field(..., description="加入时间（UTC）")


class RoomInfoData(BaseModel):
    """房间摘要信息。"""

    room_id: str = Field(..., description="房间唯一标识")
    participant_count: int = Field(..., description="当前成员数")
    participants: list[ParticipantData] = Field(default_factory=list, description="成员列表")


class RoomBootstrapData(BaseModel):
    """进入房间页面时客户端需要的初始化参数。"""

    room_id: str = Field(..., description="房间唯一标识")
    identity_token: str | None = Field(default=None, description="透传的身份令牌")
    display_name: str | None = Field(default=None, description="目录解析出的显示名")
    signaling_path: str = Field(default="/ws/signaling", description="信令 WebSocket 路径")
    ice_servers: list[str] = Field(default_factory=list, description="ICE 服务器 URL")
