"""
meetroom.services.directory
~~~~~~~~~~~~~~~~~~~~~~~~~~~

显示名解析服务 —— 身份目录的外部协作方封装。

查询有时间上限：超时、数据库异常、令牌缺失都在本地回退为默认名称，
绝不会阻塞或打断加入房间流程。
"""
from __future__ import annotations

import asyncio

from meetroom.core.logging import get_logger
from meetroom.db.directory_repository import DirectoryRepository

logger = get_logger(__name__)


class DirectoryService:
    """显示名解析服务。

    Attributes:
        repo: 身份目录仓库；为 ``None`` 时（未启用 MongoDB）总是返回默认名称。
        default_name: 回退用的默认显示名。
        timeout: 单次查询的超时（秒）。
    """

    def __init__(
        self,
        repo: DirectoryRepository | None,
        default_name: str,
        timeout: float,
    ) -> None:
        self.repo = repo
        self.default_name = default_name
        self.timeout = timeout

    async def lookup(self, token: str | None) -> str | None:
        """按身份令牌查询显示名，查不到或失败时返回 ``None``。"""
        if not token or self.repo is None:
            return None
        try:
            return await asyncio.wait_for(
                self.repo.find_display_name(token), timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("显示名查询超时 | token=%s | timeout=%.1fs", token, self.timeout)
        except Exception as e:
            logger.warning("显示名查询失败 | token=%s | %s", token, e)
        return None

    async def resolve_name(self, token: str | None) -> str:
        """解析显示名，任何失败都回退到默认名称。"""
        name = await self.lookup(token)
        return name or self.default_name
