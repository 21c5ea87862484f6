"""时间工具"""
from datetime import datetime, timezone


def utc_now() -> datetime:
    """获取当前 UTC 时间（naive datetime，兼容 SQLite）"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
