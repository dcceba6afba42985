"""
可用率计算

对时间窗口内的采集历史按目标统计通过/失败次数，并根据采集间隔推算缺失的轮次。
缺失轮次是全局的（监控本身停摆），计入每个目标的失败次数。
"""

import math
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

from .models import ServiceUptime, StatusEntry, Target, ensure_utc


def round2(value: float) -> float:
    """保留两位小数，.5 向上进位（value 非负）"""
    return math.floor(value * 100 + 0.5) / 100


def expected_slots(start: datetime, end: datetime, interval: timedelta) -> int:
    """窗口内应有的采集轮次；interval <= 0 时返回 0"""
    if interval <= timedelta(0) or end <= start:
        return 0
    return math.ceil((end - start) / interval)


def count_missing(start: datetime, end: datetime, interval: timedelta, observed: int) -> int:
    """
    推算缺失的轮次

    应有轮次不小于实际观测到的轮次（防止间隔配置错误时出现负值）。
    """
    if interval <= timedelta(0):
        return 0
    expected = max(expected_slots(start, end, interval), observed)
    return max(0, expected - observed)


class _Tally:
    __slots__ = ("name", "passing", "failing", "last_state", "last_updated")

    def __init__(self, name: str = ""):
        self.name = name
        self.passing = 0
        self.failing = 0
        self.last_state: Optional[str] = None
        self.last_updated: Optional[datetime] = None


def compute_service_uptime(
    entries: Sequence[StatusEntry],
    targets: Sequence[Target],
    start: datetime,
    end: datetime,
    interval: timedelta,
) -> List[ServiceUptime]:
    """
    计算窗口 [start, end] 内每个目标的可用率

    Args:
        entries: 采集历史（按时间升序）
        targets: 配置的目标；没有样本的目标也会输出一行 0/0
        start: 窗口起点
        end: 窗口终点（早于 start 时按 start 处理）
        interval: 采集间隔，<= 0 时不推算缺失轮次

    Returns:
        按 id 升序的 ServiceUptime 列表
    """
    start = ensure_utc(start)
    end = max(ensure_utc(end), start)

    configured: Dict[str, str] = {}
    tallies: Dict[str, _Tally] = {}
    for target in targets:
        target_id = target.id.strip()
        if not target_id:
            continue
        configured[target_id] = target.name.strip()
        tallies.setdefault(target_id, _Tally())

    observed = 0
    for entry in entries:
        if entry.timestamp < start or entry.timestamp > end:
            continue
        observed += 1
        for check in entry.checks:
            check_id = check.id.strip()
            if not check_id:
                continue
            tally = tallies.setdefault(check_id, _Tally())
            if check.name.strip():
                # 保留最近一次观测到的名称
                tally.name = check.name.strip()
            if check.ok:
                tally.passing += 1
            else:
                tally.failing += 1
            if check.state:
                tally.last_state = check.state
                tally.last_updated = entry.timestamp

    missing = count_missing(start, end, interval, observed)

    results = []
    for target_id in sorted(tallies):
        tally = tallies[target_id]
        failing = tally.failing + missing
        total = tally.passing + failing
        uptime = tally.passing / total * 100 if total > 0 else 0.0
        results.append(ServiceUptime(
            id=target_id,
            name=configured.get(target_id) or tally.name or target_id,
            uptime_percent=round2(uptime),
            total_checks=total,
            passing=tally.passing,
            failing=failing,
            missing=missing,
            last_state=tally.last_state,
            last_updated=tally.last_updated,
        ))
    return results
