"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 关闭 MongoDB、去掉聊天限流，
并提供假的协商层 / 设备层，使单元测试无需网络与真实设备即可运行。
"""
from __future__ import annotations

import os

import pytest

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("MONGO_ENABLED", "false")
os.environ.setdefault("CHAT_RATE_LIMIT_INTERVAL", "0")

from fakes import FakeDevices, FakeNegotiator  # noqa: E402


@pytest.fixture()
def fake_negotiator() -> FakeNegotiator:
    return FakeNegotiator()


@pytest.fixture()
def fake_devices() -> FakeDevices:
    return FakeDevices()
