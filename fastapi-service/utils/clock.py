# utils/clock.py
"""
可注入的時鐘

所有時間均以「不帶時區的 UTC」表示，與資料庫中儲存的格式一致。
"""
from datetime import datetime, timezone
from typing import Optional, Protocol


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """帶時區的時間轉為 UTC 後移除時區；不帶時區的時間視為 UTC"""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FixedClock:
    """固定時間的時鐘（測試用）"""

    def __init__(self, fixed: datetime):
        self.fixed = to_naive_utc(fixed)

    def now(self) -> datetime:
        return self.fixed
