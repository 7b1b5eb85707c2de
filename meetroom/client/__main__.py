"""
meetroom.client.__main__
~~~~~~~~~~~~~~~~~~~~~~~~

命令行客户端::

    python -m meetroom.client --server ws://localhost:8080 --room <room_id>

标准输入的每一行作为聊天消息发送；``/mute`` ``/camera`` ``/share`` ``/leave`` 为控制命令。
"""
from __future__ import annotations

import argparse
import asyncio
import sys
from contextlib import suppress

from meetroom.client.media import AiortcMediaDevices
from meetroom.client.session import ClientSession
from meetroom.client.signaling import SignalingChannel
from meetroom.core.errors import MeetroomError
from meetroom.core.logging import get_logger, setup_logging

logger = get_logger(__name__)


async def open_stdin() -> asyncio.StreamReader:
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader()
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return reader


async def read_commands(session: ClientSession) -> None:
    reader = await open_stdin()
    while True:
        raw = await reader.readline()
        if not raw:
            break
        line = raw.decode().strip()
        if not line:
            continue
        if line == "/leave":
            break
        if line == "/mute":
            logger.info("麦克风: %s", session.media.toggle_mute())
        elif line == "/camera":
            logger.info("摄像头: %s", session.media.toggle_camera())
        elif line == "/share":
            if session.media.sharing_screen:
                session.media.stop_screen_share()
            else:
                try:
                    await session.media.start_screen_share()
                except MeetroomError as e:
                    logger.error("屏幕共享失败: %s", e)
        else:
            await session.send_chat(line)
    await session.leave()


async def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="meetroom.client", description="加入一个会议房间")
    parser.add_argument("--server", default="ws://localhost:8080", help="服务端地址")
    parser.add_argument("--room", required=True, help="房间 ID")
    parser.add_argument("--identity-token", default=None, help="可选的身份令牌")
    args = parser.parse_args(argv)

    setup_logging()
    channel = SignalingChannel(f"{args.server.rstrip('/')}/ws/signaling")
    session = ClientSession(channel, AiortcMediaDevices())

    commands = asyncio.create_task(read_commands(session))
    try:
        await session.run(args.room, identity_token=args.identity_token)
    except MeetroomError as e:
        logger.error("无法参会: %s", e)
        return 1
    finally:
        commands.cancel()
        with suppress(asyncio.CancelledError):
            await commands
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
