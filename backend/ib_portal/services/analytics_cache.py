"""
进程内分析缓存

热点聚合查询的短期缓存（TTL），只是优化手段，不是数据来源：
缓存随时可能为空或被淘汰，调用方必须能回源。
由调用方注入，不做模块级单例。
"""
import threading
from typing import Any, Callable, Hashable, Optional

from cachetools import TTLCache

_MISSING = object()


class AnalyticsCache:
    """线程安全的 TTL 缓存，键约定为 (namespace, partner_id, ...) 元组"""

    def __init__(self, ttl: float = 60, maxsize: int = 1024, timer: Optional[Callable[[], float]] = None):
        self.ttl = ttl
        if timer is not None:
            self._cache = TTLCache(maxsize=maxsize, ttl=ttl, timer=timer)
        else:
            self._cache = TTLCache(maxsize=maxsize, ttl=ttl)
        self._lock = threading.RLock()

    def get(self, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            return self._cache.get(key, default)

    def set(self, key: Hashable, value: Any) -> None:
        with self._lock:
            self._cache[key] = value

    def get_or_set(self, key: Hashable, factory: Callable[[], Any]) -> Any:
        """命中直接返回，否则调用 factory 回源并写入缓存"""
        value = self.get(key, _MISSING)
        if value is not _MISSING:
            return value
        value = factory()
        self.set(key, value)
        return value

    def invalidate(self, key: Hashable) -> None:
        with self._lock:
            self._cache.pop(key, None)

    def invalidate_partner(self, partner_id: int) -> int:
        """失效某个 IB 的所有缓存项，返回失效条数"""
        with self._lock:
            keys = [
                k for k in list(self._cache.keys())
                if isinstance(k, tuple) and len(k) > 1 and k[1] == partner_id
            ]
            for k in keys:
                self._cache.pop(k, None)
            return len(keys)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)
