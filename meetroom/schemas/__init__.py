"""
meetroom.schemas
~~~~~~~~~~~~~~~~
HTTP 与信令协议使用的 Pydantic 模型。
"""
from meetroom.schemas.api_response import ApiResponse
from meetroom.schemas.rooms import ParticipantData, RoomBootstrapData, RoomInfoData

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()

__all__ = ["ApiResponse", "ParticipantData", "RoomBootstrapData", "RoomInfoData"]
