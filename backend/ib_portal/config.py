"""
应用配置
"""
import json
from pathlib import Path
from typing import Annotated, Any, List

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _parse_str_list(value: Any) -> List[str]:
    """Parse list-like env values.

    Supports:
    - JSON list: '["http://a","http://b"]'
    - comma-separated: 'http://a,http://b'
    - already-a-list
    """
    if value is None:
        return []
    if isinstance(value, list):
        return [str(x).strip() for x in value if str(x).strip()]
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return []
        if s.startswith("[") and s.endswith("]"):
            try:
                parsed = json.loads(s)
            except ValueError:
                parsed = None
            if isinstance(parsed, list):
                return [str(x).strip() for x in parsed if str(x).strip()]
        return [part.strip() for part in s.split(",") if part.strip()]
    return [str(value).strip()] if str(value).strip() else []


class Settings(BaseSettings):
    # 数据库配置
    DATABASE_URL: str = "sqlite:///./ib_portal.db"
    DEBUG: bool = False

    # JWT配置（管理员令牌由认证服务签发，这里只做校验）
    SECRET_KEY: str = "your-secret-key-change-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60
    ADMIN_ROLES: Annotated[List[str], NoDecode] = ["admin", "manager"]

    # CORS配置
    CORS_ORIGINS: Annotated[List[str], NoDecode] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
        "http://127.0.0.1:5173",
    ]

    # ===== MT5 交易平台 API =====
    MT5_API_BASE_URL: str = "http://localhost:5003"
    MT5_API_TIMEOUT: float = 30.0  # 秒
    MT5_PAGE_SIZE: int = 1000
    MT5_MAX_PAGES: int = 20  # 单个账号单个窗口最多翻页数

    # ===== 自动同步 =====
    SYNC_ENABLED: bool = True
    SYNC_INTERVAL_MINUTES: int = 5
    SYNC_INITIAL_DELAY_SECONDS: int = 60
    SYNC_WINDOW_DAYS: int = 7  # 定时任务只拉最近7天
    BACKFILL_WINDOW_DAYS: int = 90  # 手动同步默认回补90天
    SYNC_MAX_WORKERS: int = 4  # 账号并发数

    # ===== 佣金快照 / 缓存 =====
    SNAPSHOT_FRESHNESS_HOURS: float = 4.0
    ANALYTICS_CACHE_TTL_SECONDS: int = 60
    ANALYTICS_CACHE_MAXSIZE: int = 1024
    MONEY_QUANT: str = "0.01"

    @field_validator("CORS_ORIGINS", "ADMIN_ROLES", mode="before")
    @classmethod
    def _validate_str_lists(cls, v: Any) -> List[str]:
        return _parse_str_list(v)

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[1] / ".env"),  # backend/.env
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )


settings = Settings()
