"""
meetroom.api.rooms
~~~~~~~~~~~~~~~~~~

房间 REST 接口 —— 房间入口跳转 + 页面初始化参数 + 成员查询。

端点:
  - ``GET /``                        → 生成新的房间 ID 并重定向
  - ``GET /{room_id}``               → 房间页面初始化参数（JSON）
  - ``GET /api/rooms``               → 活跃房间列表
  - ``GET /api/rooms/{room_id}``     → 房间详情
"""
import uuid

from fastapi import APIRouter, Depends, Request
from fastapi.responses import RedirectResponse

from meetroom.api.deps import get_directory, get_registry
from meetroom.core.rate_limit import limiter
from meetroom.core.settings import settings
from meetroom.schemas.api_response import ApiResponse
from meetroom.schemas.rooms import RoomBootstrapData, RoomInfoData
from meetroom.services.directory import DirectoryService
from meetroom.services.room_registry import RoomRegistry

api_router: APIRouter = APIRouter()
page_router: APIRouter = APIRouter()


# ── 房间查询端点 ──────────────────────────────────────────────────────

@api_router.get("/rooms", summary="获取活跃房间列表", response_model=ApiResponse[list[RoomInfoData]])
@limiter.limit("10/second")
async def list_rooms(request: Request, registry: RoomRegistry = Depends(get_registry)):
    """返回所有当前有成员的房间。"""
    return ApiResponse.ok(data=registry.list_rooms())


@api_router.get("/rooms/{room_id}", summary="获取房间详情", response_model=ApiResponse[RoomInfoData])
@limiter.limit("5/second")
async def room_info(request: Request, room_id: str, registry: RoomRegistry = Depends(get_registry)):
    """返回指定房间的成员信息。房间为空时返回 0 个成员，而不是 404。"""
    room = registry.get_room(room_id)
    if room is None:
        return ApiResponse.ok(data=RoomInfoData(room_id=room_id, participant_count=0))
    return ApiResponse.ok(data=room.info())


# ── 房间入口 ──────────────────────────────────────────────────────────

@page_router.get("/", summary="创建新房间", include_in_schema=False)
async def new_room() -> RedirectResponse:
    """每次访问根路径都生成一个高熵房间 ID 并跳转。"""
    return RedirectResponse(url=f"/{uuid.uuid4()}")


@page_router.get("/{room_id}", summary="房间初始化参数", response_model=ApiResponse[RoomBootstrapData])
@limiter.limit("5/second")
async def room_bootstrap(
    request: Request,
    room_id: str,
    identity_token: str | None = None,
    directory: DirectoryService = Depends(get_directory),
):
    """返回进入房间所需的参数：信令路径、ICE 服务器、已解析的显示名。

    Args:
        room_id: 房间 ID（不透明路径段）。
        identity_token: 可选的身份令牌，透传给信令 ``join-room``。
    """
    display_name = await directory.lookup(identity_token)
    return ApiResponse.ok(
        data=RoomBootstrapData(
            room_id=room_id,
            identity_token=identity_token,
            display_name=display_name,
            ice_servers=settings.ICE_SERVERS,
        ),
    )
