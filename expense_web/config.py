"""运行环境相关的路径工具与应用配置，兼容源码与打包模式。"""

import platform
import secrets
import sys
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def get_data_path() -> Path:
    """获取数据存储路径（适配各操作系统）"""
    if getattr(sys, "frozen", False):
        home = Path.home()
        system = platform.system()
        if system == "Windows":
            base = home / "AppData" / "Roaming"
        elif system == "Darwin":
            base = home / "Library" / "Application Support"
        else:
            base = home / ".local" / "share"

        data_dir = base / "ExpenseTracker"
        data_dir.mkdir(parents=True, exist_ok=True)
        return data_dir

    return Path(__file__).parent.parent.absolute()


def load_or_create_secret_key(data_dir: Path) -> str:
    """生成或加载应用的密钥文件，确保重启后会话保持。"""
    key_path = data_dir / "secret.key"
    if key_path.exists():
        existing = key_path.read_text().strip()
        if existing:
            return existing

    key = secrets.token_hex(24)
    key_path.write_text(key)
    return key


class Settings(BaseSettings):
    """
    应用配置。

    从环境变量（前缀 EXPENSE_TRACKER_）与 .env 文件读取。
    """

    model_config = SettingsConfigDict(
        env_prefix="EXPENSE_TRACKER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database_url: Optional[str] = Field(
        default=None,
        description="SQLAlchemy 连接串，缺省为数据目录下的 SQLite 文件",
    )
    secret_key: Optional[str] = Field(
        default=None,
        description="Flask 会话密钥，缺省时生成并保存在数据目录",
    )
    superadmin_password: str = Field(
        default="SuperSecret123",
        min_length=6,
        description="首次初始化超级管理员账号时使用的密码",
    )
    session_lifetime_minutes: int = Field(default=120, ge=1)
    graph_default_months: int = Field(
        default=6,
        ge=1,
        le=120,
        description="图表未指定日期范围时回看的月数",
    )
    recent_limit: int = Field(default=5, ge=1, le=100)
    log_level: str = Field(default="INFO")
    log_json: bool = Field(default=True)
    seed_on_startup: bool = Field(
        default=True,
        description="启动时执行角色/菜单/超级管理员的初始化",
    )

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.strip().upper() or "INFO"

    def resolve_database_url(self, data_dir: Optional[Path] = None) -> str:
        if self.database_url:
            return self.database_url
        data_dir = data_dir or get_data_path()
        return f"sqlite:///{data_dir / 'expenses.db'}"

    def resolve_secret_key(self, data_dir: Optional[Path] = None) -> str:
        if self.secret_key:
            return self.secret_key
        return load_or_create_secret_key(data_dir or get_data_path())


@lru_cache()
def get_settings() -> Settings:
    """
    读取应用配置（带缓存）。

    需要重新加载时调用 get_settings.cache_clear()。
    """
    return Settings()
