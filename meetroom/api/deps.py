from fastapi import Request

from meetroom.services.directory import DirectoryService
from meetroom.services.room_registry import RoomRegistry


def get_registry(request: Request) -> RoomRegistry:
    return request.app.state.registry


def get_directory(request: Request) -> DirectoryService:
    return request.app.state.directory
