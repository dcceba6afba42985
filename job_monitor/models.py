"""
数据模型定义

包括：
- 采集数据（Target / CheckResult / StatusEntry / ConnectivityStatus）
- 计算结果（ServiceUptime / TimelinePoint / ServiceTimeline）
- 集群聚合与节点间传输模型
- 概览（overview）模型
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


def ensure_utc(value: datetime) -> datetime:
    """无时区的时间一律视为 UTC"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# =============================================================================
# 采集数据（只追加，不可变）
# =============================================================================

class Target(BaseModel):
    """监控目标（来自配置，运行期不可变）"""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    service: Optional[str] = None  # systemd 单元名，如 "nginx.service"
    url: Optional[str] = None  # HTTP 探测地址
    timeout_seconds: int = 0

    @property
    def display_name(self) -> str:
        return self.name.strip() or self.id.strip()


class CheckResult(BaseModel):
    """单个目标在某一轮采集中的结果"""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str = ""
    ok: bool = False
    state: str = ""  # systemd ActiveState 或空字符串
    status_code: Optional[int] = None
    latency_ms: Optional[float] = None
    error: Optional[str] = None


class StatusEntry(BaseModel):
    """一轮采集：时间戳 + 所有目标的结果"""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    checks: Tuple[CheckResult, ...] = ()

    @field_validator("timestamp")
    @classmethod
    def _utc_timestamp(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class ConnectivityStatus(BaseModel):
    """网络连通性探测样本（单序列，无目标维度）"""
    model_config = ConfigDict(frozen=True)

    target: str
    ok: bool = False
    latency_ms: int = 0
    error: Optional[str] = None
    checked_at: datetime

    @field_validator("checked_at")
    @classmethod
    def _utc_checked_at(cls, value: datetime) -> datetime:
        return ensure_utc(value)


# =============================================================================
# 计算结果（每次读取时重新计算，不落盘）
# =============================================================================

class ServiceUptime(BaseModel):
    """单个目标在时间窗口内的可用率统计"""
    id: str
    name: str
    uptime_percent: float = 0.0
    total_checks: int = 0
    passing: int = 0
    failing: int = 0
    missing: int = 0
    last_state: Optional[str] = None
    last_updated: Optional[datetime] = None


class BucketState(str, Enum):
    """时间桶分类"""
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    MISSING = "missing"
    UNKNOWN = "unknown"


class TimelineDetail(BaseModel):
    """问题桶的明细记录"""
    timestamp: datetime
    state: Optional[str] = None
    error: Optional[str] = None


class TimelinePoint(BaseModel):
    """时间线上的一个桶"""
    state: BucketState
    label: str
    start: datetime
    end: datetime
    details: List[TimelineDetail] = Field(default_factory=list)


class ServiceTimeline(BaseModel):
    """单个服务的时间线"""
    service_id: str
    service_name: str
    timeline: List[TimelinePoint] = Field(default_factory=list)


# =============================================================================
# 集群聚合
# =============================================================================

class Node(BaseModel):
    """一个 Job Monitor 实例"""
    id: str
    name: str = ""
    interval_minutes: int = 0
    connectivity_interval_seconds: int = 0


class PeerState(str, Enum):
    """对端缓存状态"""
    UNKNOWN = "unknown"  # 尚未拉取过
    HEALTHY = "healthy"  # 最近一次拉取成功
    DEGRADED = "degraded"  # 最近一次拉取失败（保留上次成功的数据）


class NodeStatusResponse(BaseModel):
    """GET /api/node/status 响应"""
    node: Node
    status: Optional[StatusEntry] = None
    connectivity: Optional[ConnectivityStatus] = None
    targets: List[Target] = Field(default_factory=list)
    generated_at: datetime


class NodeHistoryResponse(BaseModel):
    """GET /api/node/history 响应"""
    node: Node
    history: List[StatusEntry] = Field(default_factory=list)
    connectivity: List[ConnectivityStatus] = Field(default_factory=list)
    generated_at: datetime
    range: str
    range_start: datetime
    range_end: datetime


class PeerSnapshot(BaseModel):
    """单个节点在某个时间窗口内的快照"""
    node: Node
    status: Optional[StatusEntry] = None
    connectivity: Optional[ConnectivityStatus] = None
    history: List[StatusEntry] = Field(default_factory=list)
    connectivity_history: List[ConnectivityStatus] = Field(default_factory=list)
    services: List[ServiceUptime] = Field(default_factory=list)
    targets: List[Target] = Field(default_factory=list)
    service_timelines: List[ServiceTimeline] = Field(default_factory=list)
    connectivity_timeline: List[TimelinePoint] = Field(default_factory=list)
    updated_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None
    error: Optional[str] = None
    source: str = "local"
    state: PeerState = PeerState.HEALTHY


class ClusterSnapshot(BaseModel):
    """GET /api/cluster 响应"""
    generated_at: datetime
    range: str
    range_start: datetime
    range_end: datetime
    nodes: List[PeerSnapshot] = Field(default_factory=list)


# =============================================================================
# 概览（多节点紧凑视图）
# =============================================================================

class OverviewBucket(BaseModel):
    """概览桶：ok / issue / unknown"""
    start: datetime
    end: datetime
    state: str = "unknown"
    detail: Optional[str] = None


class OverviewItem(BaseModel):
    """概览中的一个实体"""
    id: str
    name: str
    kind: str = "service"
    node_id: str
    node_name: str
    buckets: List[OverviewBucket] = Field(default_factory=list)


class OverviewSnapshot(BaseModel):
    """GET /api/overview 响应"""
    generated_at: datetime
    range_start: datetime
    range_end: datetime
    bucket_seconds: int
    items: List[OverviewItem] = Field(default_factory=list)
    connectivity: List[OverviewItem] = Field(default_factory=list)
    nodes: List[Node] = Field(default_factory=list)
