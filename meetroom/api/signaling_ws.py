"""
meetroom.api.signaling_ws
~~~~~~~~~~~~~~~~~~~~~~~~~

信令 WebSocket 接口。

每个客户端一条连接，连接生命周期内只属于一个房间：
先发送一次 ``join-room``，此后的聊天与协商消息都隐式限定在该房间。
连接断开（无论主动还是异常）都按离开处理并广播给房间其他成员。
"""
from __future__ import annotations

import asyncio
import uuid
from contextlib import suppress

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from meetroom.core.errors import ProtocolError
from meetroom.core.logging import get_logger, request_id_ctx_var
from meetroom.core.rate_limit import ChatRateLimiter
from meetroom.core.settings import settings
from meetroom.schemas.signaling import (
    ErrorMessage,
    JoinRoom,
    SendChat,
    SendSignal,
    client_message_adapter,
)
from meetroom.services.event_relay import EventRelay
from meetroom.services.signaling_session import SignalingSession

logger = get_logger(__name__)

router: APIRouter = APIRouter()


async def dispatch_frame(
    relay: EventRelay,
    session: SignalingSession,
    raw: str,
    chat_limiter: ChatRateLimiter,
) -> None:
    """解析并处理一帧客户端消息。协议错误以 ``error`` 帧回给发送方。"""
    try:
        message = client_message_adapter.validate_json(raw)
    except ValidationError as e:
        session.send(ErrorMessage(code="bad-message", detail=str(e.errors()[0]["msg"])))
        return

    try:
        if isinstance(message, JoinRoom):
            await relay.on_join(session, message)
        elif isinstance(message, SendChat):
            if not chat_limiter.allow(session.session_id):
                session.send(ErrorMessage(code="rate-limited", detail="chat messages sent too fast"))
                return
            relay.on_chat(session, message.text)
        elif isinstance(message, SendSignal):
            relay.on_signal(session, message.target, message.payload)
    except ProtocolError as e:
        logger.info("协议错误 | code=%s | %s", e.code, e.detail)
        session.send(ErrorMessage(code=e.code, detail=e.detail))


@router.websocket("/ws/signaling")
async def signaling_endpoint(websocket: WebSocket) -> None:
    """信令端点：接收客户端帧并交给 ``EventRelay``，发件箱由独立协程写出。"""
    ws_req_id = f"ws-{uuid.uuid4().hex[:8]}"
    token = request_id_ctx_var.set(ws_req_id)

    relay: EventRelay = websocket.app.state.event_relay
    chat_limiter = ChatRateLimiter(interval_seconds=settings.CHAT_RATE_LIMIT_INTERVAL)

    await websocket.accept()
    session = SignalingSession(websocket, outbox_size=settings.OUTBOX_SIZE)
    relay.register(session)
    writer = asyncio.create_task(session.writer_loop())
    logger.info("信令连接建立 | session=%s", session.session_id)

    try:
        while True:
            raw: str = await websocket.receive_text()
            await dispatch_frame(relay, session, raw, chat_limiter)
    except WebSocketDisconnect:
        pass  # 正常断开
    except Exception as e:
        logger.error("信令连接异常: %s | session=%s", e, session.session_id, exc_info=True)
    finally:
        # 任何断开都按离开处理
        await relay.on_leave(session)
        relay.unregister(session)
        chat_limiter.forget(session.session_id)
        writer.cancel()
        with suppress(asyncio.CancelledError):
            await writer
        logger.info("信令连接关闭 | session=%s | room=%s", session.session_id, session.room_id)
        request_id_ctx_var.reset(token)
