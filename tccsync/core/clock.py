"""
时间工具

- 统一使用带时区的 UTC 时间
- 单调递增的时间戳（保证 updatedAt 严格递增）
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """当前 UTC 时间"""
    return datetime.now(timezone.utc)


def ensure_aware(value: Optional[datetime]) -> Optional[datetime]:
    """将无时区的时间视为 UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class MonotonicClock:
    """
    单调时钟

    墙上时钟没有前进（或回拨）时，返回上一个时间戳 + 1 微秒。
    """

    def __init__(self):
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            current = utcnow()
            if self._last is not None and current <= self._last:
                current = self._last + timedelta(microseconds=1)
            self._last = current
            return current

    def observe(self, value: Optional[datetime]):
        """记录一个外部时间戳，之后发出的时间戳一定比它大"""
        value = ensure_aware(value)
        if value is None:
            return
        with self._lock:
            if self._last is None or value > self._last:
                self._last = value
