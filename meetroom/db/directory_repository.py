"""
meetroom.db.directory_repository
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

身份目录仓库 —— 只读访问 MongoDB 中的目录集合，按身份 ID 查询显示名。

文档结构::

    {"_id": "<identity id>", "name": "<display name>"}
"""
from __future__ import annotations

from typing import TypedDict

from motor.motor_asyncio import AsyncIOMotorDatabase

from meetroom.core.logging import get_logger

logger = get_logger(__name__)


class DirectoryEntry(TypedDict):
    """目录集合中的单条记录。"""
    _id: str
    name: str


class DirectoryRepository:
    """身份目录只读仓库。

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase, collection: str) -> None:
        self.db = db
        self._collection = db[collection]

    async def find_display_name(self, identity_id: str) -> str | None:
        """按身份 ID 查询显示名。

        Args:
            identity_id: 客户端携带的身份令牌（即目录文档 ``_id``）。

        Returns:
            显示名；记录不存在或 name 为空时返回 ``None``。
        """
        doc: DirectoryEntry | None = await self._collection.find_one(
            {"_id": identity_id},
            projection={"name": 1},
        )
        if doc is None:
            logger.debug("目录中无此身份 | id=%s", identity_id)
            return None
        return doc.get("name") or None
