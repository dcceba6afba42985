"""
时间线构建

把稀疏或很长的样本序列压缩成固定数量的等宽时间桶，每个桶归为一种状态，
并保留最多 4 条问题明细供前端下钻。

桶状态优先级（高者胜出）：
1. ERROR   任一样本明确失败（inactive/failed/degraded，或未识别的非 ok 状态）
2. MISSING 没有样本可判定为正常，也没有过渡状态（空桶、unknown 等）
3. WARNING 其余样本均为过渡状态（activating/deactivating/reloading/maintenance）
4. SUCCESS 所有样本 ok/active/running
"""

import statistics
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence, Tuple

from .models import (
    BucketState, ConnectivityStatus, ServiceTimeline, StatusEntry, Target,
    TimelineDetail, TimelinePoint, ensure_utc,
)

# 每个服务默认生成的桶数
DEFAULT_TIMELINE_POINTS = 80
MAX_DETAILS_PER_POINT = 4

WARNING_STATES = frozenset({"activating", "deactivating", "reloading", "maintenance"})
ERROR_STATES = frozenset({"inactive", "failed", "degraded"})
SUCCESS_STATES = frozenset({"active", "running"})

LABELS: Dict[BucketState, str] = {
    BucketState.SUCCESS: "Operational",
    BucketState.WARNING: "Transitioning",
    BucketState.ERROR: "Unavailable",
    BucketState.MISSING: "No data",
    BucketState.UNKNOWN: "Unknown",
}

# 连通性桶“延续”上一个样本的静默阈值范围
HOLDOVER_MIN = timedelta(minutes=1)
HOLDOVER_MAX = timedelta(hours=2)


class Sample(NamedTuple):
    """时间线输入样本"""
    timestamp: datetime
    ok: bool
    state: str = ""
    error: str = ""


def classify_sample(sample: Sample) -> BucketState:
    """单个样本的分类"""
    state = sample.state.strip().lower()
    if not sample.ok and (state in ERROR_STATES or (state == "" and sample.error)):
        return BucketState.ERROR
    if sample.ok or state in SUCCESS_STATES:
        return BucketState.SUCCESS
    if state == "missing":
        return BucketState.MISSING
    if state in WARNING_STATES:
        return BucketState.WARNING
    if state in ("", "unknown"):
        return BucketState.MISSING
    return BucketState.ERROR


def evaluate_bucket(samples: Iterable[Sample]) -> Tuple[BucketState, List[TimelineDetail]]:
    """
    按优先级归类一个桶

    Returns:
        (状态, 明细)；SUCCESS 桶不带明细
    """
    seen = set()
    details: List[TimelineDetail] = []
    for sample in samples:
        state = classify_sample(sample)
        seen.add(state)
        if state in (BucketState.ERROR, BucketState.WARNING) and len(details) < MAX_DETAILS_PER_POINT:
            details.append(TimelineDetail(
                timestamp=sample.timestamp,
                state=sample.state or None,
                error=sample.error or None,
            ))

    for state in (BucketState.ERROR, BucketState.MISSING, BucketState.WARNING):
        if state in seen:
            return state, details
    if BucketState.SUCCESS in seen:
        return BucketState.SUCCESS, []
    return BucketState.MISSING, details


def make_point(state: BucketState, start: datetime, end: datetime,
               details: Optional[List[TimelineDetail]] = None) -> TimelinePoint:
    return TimelinePoint(state=state, label=LABELS[state], start=start, end=end, details=details or [])


def bucket_bounds(start: datetime, end: datetime, points: int) -> List[Tuple[datetime, datetime]]:
    """等宽切分 [start, end]，最后一个桶延伸到 end"""
    duration = (end - start) / points
    if duration <= timedelta(0):
        duration = timedelta(minutes=1)
    bounds = []
    for i in range(points):
        bucket_start = start + duration * i
        bucket_end = end if i == points - 1 else bucket_start + duration
        bounds.append((bucket_start, bucket_end))
    return bounds


def _normalize_window(start: datetime, end: datetime, points: int) -> Tuple[datetime, datetime, int]:
    if points <= 0:
        points = DEFAULT_TIMELINE_POINTS
    start = ensure_utc(start)
    end = ensure_utc(end)
    if end <= start:
        end = start + timedelta(minutes=1)
    return start, end, points


def build_timeline(samples: Sequence[Sample], start: datetime, end: datetime,
                   points: int = DEFAULT_TIMELINE_POINTS) -> List[TimelinePoint]:
    """
    单一实体的时间线

    样本和桶都按时间顺序排列，用一个单调游标一次扫描完成。
    """
    start, end, points = _normalize_window(start, end, points)
    ordered = sorted(samples, key=lambda s: s.timestamp)
    bounds = bucket_bounds(start, end, points)

    output = []
    cursor = 0
    total = len(ordered)
    for index, (bucket_start, bucket_end) in enumerate(bounds):
        last_bucket = index == len(bounds) - 1
        while cursor < total and ordered[cursor].timestamp < bucket_start:
            cursor += 1
        first = cursor
        while cursor < total and (
            ordered[cursor].timestamp < bucket_end
            or (last_bucket and ordered[cursor].timestamp <= bucket_end)
        ):
            cursor += 1
        state, details = evaluate_bucket(ordered[first:cursor])
        output.append(make_point(state, bucket_start, bucket_end, details))
    return output


class EntityDirectory:
    """
    实体合并

    按固定顺序登记实体：先配置的目标，再历史中观测到的 id。
    显示名优先级：配置名 > 最近观测到的名称 > id。
    """

    def __init__(self, targets: Sequence[Target] = ()):
        self._order: List[str] = []
        self._configured: Dict[str, str] = {}
        self._observed: Dict[str, str] = {}
        self._target_index: Dict[str, int] = {}
        for target in targets:
            self.add_target(target)

    def _ensure(self, entity_id: str):
        if entity_id not in self._configured and entity_id not in self._observed:
            self._order.append(entity_id)

    def add_target(self, target: Target):
        target_id = target.id.strip()
        if not target_id:
            return
        self._ensure(target_id)
        self._target_index.setdefault(target_id, len(self._target_index))
        self._configured.setdefault(target_id, target.name.strip())

    def observe(self, entity_id: str, name: str = ""):
        """登记一次观测；越晚的观测名称优先"""
        entity_id = entity_id.strip()
        if not entity_id:
            return
        self._ensure(entity_id)
        name = name.strip()
        if name or entity_id not in self._observed:
            self._observed[entity_id] = name

    def ids(self) -> List[str]:
        return list(self._order)

    def name(self, entity_id: str) -> str:
        return self._configured.get(entity_id) or self._observed.get(entity_id) or entity_id

    def target_index(self, entity_id: str) -> Optional[int]:
        """配置顺序中的位置；未配置的实体返回 None"""
        return self._target_index.get(entity_id)


def build_service_timelines(
    entries: Sequence[StatusEntry],
    latest: Optional[StatusEntry],
    targets: Sequence[Target],
    start: datetime,
    end: datetime,
    points: int = DEFAULT_TIMELINE_POINTS,
) -> List[ServiceTimeline]:
    """
    把采集历史拆成每个服务的时间线

    结果按显示名（不区分大小写）排序，同名按 id。
    """
    directory = EntityDirectory(targets)
    samples: Dict[str, List[Sample]] = {}

    for entry in entries:
        for check in entry.checks:
            check_id = check.id.strip()
            if not check_id:
                continue
            directory.observe(check_id, check.name)
            samples.setdefault(check_id, []).append(Sample(
                timestamp=entry.timestamp,
                ok=check.ok,
                state=check.state,
                error=check.error or "",
            ))

    if latest is not None:
        for check in latest.checks:
            directory.observe(check.id, check.name)

    ids = sorted(directory.ids(), key=lambda i: (directory.name(i).lower(), i))
    return [
        ServiceTimeline(
            service_id=entity_id,
            service_name=directory.name(entity_id),
            timeline=build_timeline(samples.get(entity_id, []), start, end, points),
        )
        for entity_id in ids
    ]


# =============================================================================
# 连通性时间线
# =============================================================================

def connectivity_sample(status: ConnectivityStatus) -> Sample:
    """连通性样本映射为 online / offline / unknown"""
    if status.ok:
        return Sample(status.checked_at, True, "online", "")
    if status.error:
        return Sample(status.checked_at, False, "offline", status.error)
    return Sample(status.checked_at, False, "unknown", "")


def _classify_connectivity(samples: Sequence[Sample]) -> Tuple[BucketState, List[TimelineDetail]]:
    seen = set()
    details: List[TimelineDetail] = []
    for sample in samples:
        if sample.state == "online":
            seen.add(BucketState.SUCCESS)
            continue
        seen.add(BucketState.ERROR if sample.state == "offline" else BucketState.WARNING)
        if len(details) < MAX_DETAILS_PER_POINT:
            details.append(TimelineDetail(
                timestamp=sample.timestamp,
                state=sample.state,
                error=sample.error or None,
            ))
    if BucketState.ERROR in seen:
        return BucketState.ERROR, details
    if BucketState.WARNING in seen:
        return BucketState.WARNING, details
    return BucketState.SUCCESS, []


def holdover_threshold(timestamps: Sequence[datetime]) -> timedelta:
    """
    空桶沿用上一个样本的最大静默时长

    取相邻样本间隔中位数的 2 倍，限制在 [1 分钟, 2 小时]。
    """
    gaps = [
        (b - a).total_seconds()
        for a, b in zip(timestamps, timestamps[1:])
        if b > a
    ]
    if not gaps:
        return HOLDOVER_MIN
    threshold = timedelta(seconds=2 * statistics.median(gaps))
    return min(max(threshold, HOLDOVER_MIN), HOLDOVER_MAX)


def build_connectivity_timeline(entries: Sequence[ConnectivityStatus], start: datetime, end: datetime,
                                points: int = DEFAULT_TIMELINE_POINTS) -> List[TimelinePoint]:
    """
    连通性时间线

    连通性是单一序列且采样更频繁：没有样本的桶在静默未超过阈值时沿用最近一个样本，
    超过阈值才标记为 MISSING。
    """
    start, end, points = _normalize_window(start, end, points)
    bounds = bucket_bounds(start, end, points)

    ordered = sorted((connectivity_sample(e) for e in entries), key=lambda s: s.timestamp)
    if not ordered:
        return [make_point(BucketState.MISSING, s, e) for s, e in bounds]

    threshold = holdover_threshold([s.timestamp for s in ordered])
    total = len(ordered)
    cursor = 0
    last: Optional[Sample] = None
    while cursor < total and ordered[cursor].timestamp < start:
        last = ordered[cursor]
        cursor += 1

    output = []
    for index, (bucket_start, bucket_end) in enumerate(bounds):
        last_bucket = index == len(bounds) - 1
        first = cursor
        while cursor < total and (
            ordered[cursor].timestamp < bucket_end
            or (last_bucket and ordered[cursor].timestamp <= bucket_end)
        ):
            cursor += 1

        if cursor > first:
            bucket_samples = ordered[first:cursor]
            last = bucket_samples[-1]
            state, details = _classify_connectivity(bucket_samples)
        elif last is not None and bucket_end - last.timestamp <= threshold:
            held = last._replace(timestamp=bucket_start)
            state, details = _classify_connectivity([held])
        else:
            state, details = BucketState.MISSING, []
        output.append(make_point(state, bucket_start, bucket_end, details))
    return output
