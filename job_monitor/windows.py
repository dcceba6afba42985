"""
时间窗口

查询参数中的窗口键（"24h" / "30d"）到 [start, end] 的换算。
"""

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional, Tuple

DEFAULT_RANGE = "24h"

RANGE_DURATIONS: Dict[str, timedelta] = {
    "24h": timedelta(hours=24),
    "30d": timedelta(days=30),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_range(key: Optional[str]) -> str:
    """未知的窗口键回退到默认值"""
    key = (key or "").strip().lower()
    if key in RANGE_DURATIONS:
        return key
    return DEFAULT_RANGE


def clamp_window(start: datetime, end: datetime, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """
    规范化窗口

    end 不超过 now，且不早于 start。
    """
    if now is None:
        now = utcnow()
    if end > now:
        end = now
    if end < start:
        end = start
    return start, end


def resolve_window(key: Optional[str], now: Optional[datetime] = None) -> Tuple[str, datetime, datetime]:
    """
    解析窗口键

    Returns:
        (规范化后的键, start, end)
    """
    if now is None:
        now = utcnow()
    key = normalize_range(key)
    start = now - RANGE_DURATIONS[key]
    start, end = clamp_window(start, now, now)
    return key, start, end
