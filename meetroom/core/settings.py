"""
meetroom.core.settings
~~~~~~~~~~~~~~~~~~~~~~

服务端与命令行客户端共用的配置，由 pydantic-settings 从环境变量和 env 文件读取。

``ENVIRONMENT`` 决定额外加载的 ``.env.{ENVIRONMENT}``，它覆盖 ``.env``；
进程环境变量优先于两者。
"""
from __future__ import annotations

import os
from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

Environment = Literal["dev", "test", "prod"]

# 必须在类定义前确定，env_file 在建类时就固定了
_ENV_NAME: str = os.getenv("ENVIRONMENT", "dev")

_DEFAULT_LOG_LEVELS: dict[str, str] = {"dev": "INFO", "test": "DEBUG", "prod": "WARNING"}


class Settings(BaseSettings):
    """会议房间协调服务配置。"""

    model_config = SettingsConfigDict(
        env_file=(f".env.{_ENV_NAME}", ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    PROJECT_NAME: str = "Meetroom Coordinator"
    VERSION: str = "0.1.0"
    ENVIRONMENT: Environment = "dev"

    HOST: str = "0.0.0.0"
    PORT: int = 8080
    LOG_LEVEL: str | None = Field(default=None, description="不设置时按 ENVIRONMENT 推断")

    # 身份目录，文档结构 {_id: 身份令牌, name: 显示名}
    MONGO_ENABLED: bool = Field(default=True, description="关闭后所有参与者都使用默认名称")
    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DB_NAME: str = "meetroom"
    DIRECTORY_COLLECTION: str = "counselors"
    DIRECTORY_LOOKUP_TIMEOUT: float = Field(default=1.5, gt=0, description="显示名查询上限（秒）")
    DEFAULT_DISPLAY_NAME: str = "Stranger"

    # 信令
    CHAT_RATE_LIMIT_INTERVAL: float = Field(default=0.5, ge=0, description="同一连接两条聊天的最小间隔（秒）")
    CHAT_MAX_LENGTH: int = 2000
    OUTBOX_SIZE: int = Field(default=256, gt=0, description="每个连接的发件箱容量，满了就丢弃")

    # WebRTC
    ICE_SERVERS: list[str] = Field(default_factory=lambda: ["stun:stun.l.google.com:19302"])
    NEGOTIATION_TIMEOUT: float = Field(default=15.0, gt=0, description="等待 SDP answer 的上限（秒）")

    # 命令行客户端的采集源，对应 aiortc MediaPlayer 的 file / format 参数
    CLIENT_CAMERA_SOURCE: str | None = Field(default=None, description="为空时探测 /dev/video*")
    CLIENT_CAMERA_FORMAT: str | None = "v4l2"
    CLIENT_MIC_SOURCE: str | None = None
    CLIENT_MIC_FORMAT: str | None = "pulse"
    CLIENT_SCREEN_SOURCE: str = ":0.0"
    CLIENT_SCREEN_FORMAT: str = "x11grab"

    @property
    def is_prod(self) -> bool:
        return self.ENVIRONMENT == "prod"

    @property
    def is_dev(self) -> bool:
        return self.ENVIRONMENT == "dev"

    @property
    def debug(self) -> bool:
        """debug 与热重载只在 dev 打开。"""
        return self.is_dev

    @property
    def reload(self) -> bool:
        return self.is_dev

    @property
    def effective_log_level(self) -> str:
        """显式配置的 ``LOG_LEVEL``，否则 dev=INFO / test=DEBUG / prod=WARNING。"""
        return self.LOG_LEVEL or _DEFAULT_LOG_LEVELS[self.ENVIRONMENT]

    @property
    def allow_cors_all_origins(self) -> bool:
        return not self.is_prod


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings: Settings = get_settings()
