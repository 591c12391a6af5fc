"""
键值缓存 (KV Cache)
带过期时间的进程内缓存，用于缓存上下文与记号 (context:<id>、uaol:<id>)。
值以 JSON 文本保存，读取时得到的是新的副本。
"""
import json
import time
import threading
import logging
from typing import Any, Optional

logger = logging.getLogger(__name__)


class KVCache:
    def __init__(self, default_ttl: int = 3600, max_entries: int = 1000):
        self._default_ttl = default_ttl
        self._max_entries = max_entries
        self._entries = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, payload = entry
            if time.monotonic() >= expires_at:
                del self._entries[key]
                return None
        return json.loads(payload)

    def put(self, key: str, value: Any, ttl: int = None):
        payload = json.dumps(value, ensure_ascii=False)
        with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_entries:
                self._evict_oldest()
            self._entries[key] = (time.monotonic() + (ttl or self._default_ttl), payload)

    def delete(self, key: str):
        with self._lock:
            self._entries.pop(key, None)

    def clear(self):
        with self._lock:
            self._entries.clear()

    def _evict_oldest(self):
        oldest_key = min(self._entries, key=lambda k: self._entries[k][0])
        del self._entries[oldest_key]
        logger.debug(f"缓存已满，淘汰最早过期的键: {oldest_key}")
