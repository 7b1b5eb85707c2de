"""
meetroom.main
~~~~~~~~~~~~~

服务端入口::

    uvicorn meetroom.main:app --port 8080

房间状态只存在于进程内存：注册表、目录服务与事件中继在 lifespan 中创建，
挂在 ``app.state`` 上供路由和信令端点使用。
"""
from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from meetroom.api import rooms, signaling_ws
from meetroom.core.logging import get_logger, request_id_ctx_var, setup_logging
from meetroom.core.rate_limit import limiter
from meetroom.core.settings import settings
from meetroom.db import close_mongo, connect_mongo
from meetroom.db.directory_repository import DirectoryRepository
from meetroom.schemas.api_response import ApiResponse
from meetroom.services.directory import DirectoryService
from meetroom.services.event_relay import EventRelay
from meetroom.services.room_registry import RoomRegistry

setup_logging()
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    repo = None
    if settings.MONGO_ENABLED:
        db = await connect_mongo()
        repo = DirectoryRepository(db, settings.DIRECTORY_COLLECTION)

    directory = DirectoryService(
        repo=repo,
        default_name=settings.DEFAULT_DISPLAY_NAME,
        timeout=settings.DIRECTORY_LOOKUP_TIMEOUT,
    )
    app.state.registry = RoomRegistry()
    app.state.directory = directory
    app.state.event_relay = EventRelay(registry=app.state.registry, directory=directory)
    logger.info(
        "🚀 协调服务已启动 | env=%s | 身份目录=%s | port=%s",
        settings.ENVIRONMENT, "mongo" if repo else "关闭", settings.PORT,
    )

    yield

    rooms_left = len(app.state.registry.list_rooms())
    if settings.MONGO_ENABLED:
        await close_mongo()
    logger.info("👋 协调服务已停止 | 丢弃房间: %d", rooms_left)


def create_app() -> FastAPI:
    app = FastAPI(
        title=settings.PROJECT_NAME,
        description="多人会议房间协调：成员注册、事件中继与点对点协商转发",
        version=settings.VERSION,
        debug=settings.debug,
        lifespan=lifespan,
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # prod 不开放跨域；页面与服务同源部署
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.allow_cors_all_origins else [],
        allow_credentials=settings.allow_cors_all_origins,
        allow_methods=["GET"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def bind_request_id(request: Request, call_next):
        req_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        token = request_id_ctx_var.set(req_id)
        try:
            response = await call_next(request)
        finally:
            request_id_ctx_var.reset(token)
        response.headers["X-Request-ID"] = req_id
        return response

    @app.exception_handler(Exception)
    async def unhandled_error(request: Request, exc: Exception) -> JSONResponse:
        logger.error("未处理异常 | %s %s | %s", request.method, request.url.path, exc, exc_info=True)
        msg = "internal server error" if settings.is_prod else str(exc)
        return JSONResponse(status_code=500, content=ApiResponse.fail(msg).model_dump())

    @app.get("/health", tags=["System"])
    async def health() -> dict:
        return {
            "status": "ok",
            "environment": settings.ENVIRONMENT,
            "rooms": len(app.state.registry.list_rooms()),
        }

    app.include_router(rooms.api_router, prefix="/api", tags=["Rooms"])
    app.include_router(signaling_ws.router, tags=["Signaling"])
    # ``/{room_id}`` 会吞掉所有单段路径，必须最后注册
    app.include_router(rooms.page_router, tags=["Pages"])
    return app


app: FastAPI = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "meetroom.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.reload,
        log_level=settings.effective_log_level.lower(),
    )
