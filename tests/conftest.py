"""
测试公共夹具
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# 添加项目路径到 sys.path
sys.path.insert(0, str(Path(__file__).parent.parent))

from job_monitor.models import CheckResult, ConnectivityStatus, StatusEntry, Target


T0 = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def make_entry(timestamp, *checks):
    """构造一轮采集；checks 为 (id, ok) 或 (id, ok, state) 或 CheckResult"""
    results = []
    for check in checks:
        if isinstance(check, CheckResult):
            results.append(check)
            continue
        check_id, ok, *rest = check
        state = rest[0] if rest else ("active" if ok else "failed")
        results.append(CheckResult(id=check_id, name=check_id.upper(), ok=ok, state=state,
                                   error=None if ok else state))
    return StatusEntry(timestamp=timestamp, checks=tuple(results))


def make_sample(timestamp, ok=True, error=None):
    return ConnectivityStatus(target="1.1.1.1", ok=ok, latency_ms=12 if ok else 0,
                              error=error, checked_at=timestamp)


def every(start, minutes, count):
    """从 start 起每隔 minutes 分钟的 count 个时间点"""
    return [start + timedelta(minutes=minutes * i) for i in range(count)]


@pytest.fixture
def targets():
    return [
        Target(id="web", name="Web Server", service="nginx.service"),
        Target(id="api", name="Public API", url="http://api.local/healthz"),
    ]
