"""
本地节点查询 API

最新状态、历史、可用率、服务时间线、连通性。
所有统计都在请求时按窗口重新计算。
"""

from datetime import timedelta
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ...models import ConnectivityStatus, ServiceTimeline, ServiceUptime, StatusEntry, TimelinePoint
from ...timeline import DEFAULT_TIMELINE_POINTS, HOLDOVER_MAX, build_connectivity_timeline, build_service_timelines
from ...uptime import compute_service_uptime
from ...windows import resolve_window
from ..dependencies import get_state

router = APIRouter(prefix="/api", tags=["status"])

MAX_TIMELINE_POINTS = 500


class HistoryResponse(BaseModel):
    range: str
    entries: List[StatusEntry] = Field(default_factory=list)


class UptimeResponse(BaseModel):
    range: str
    services: List[ServiceUptime] = Field(default_factory=list)


class TimelineResponse(BaseModel):
    range: str
    points: int
    services: List[ServiceTimeline] = Field(default_factory=list)


class ConnectivityResponse(BaseModel):
    range: str
    enabled: bool
    latest: Optional[ConnectivityStatus] = None
    history: List[ConnectivityStatus] = Field(default_factory=list)
    timeline: List[TimelinePoint] = Field(default_factory=list)


@router.get("/status", response_model=StatusEntry)
async def get_status(state=Depends(get_state)):
    """最新一轮采集结果"""
    latest = state.storage.latest()
    if latest is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No status recorded yet"
        )
    return latest


@router.get("/history", response_model=HistoryResponse)
async def get_history(
    range: Optional[str] = Query(None, description="窗口：24h 或 30d"),
    limit: int = Query(0, ge=0, description="最多返回的条目数（最新的），0 表示不限制"),
    state=Depends(get_state),
):
    """窗口内的采集历史（按时间升序）"""
    key, start, end = resolve_window(range)
    entries = [e for e in state.storage.history_since(start) if e.timestamp <= end]
    if limit > 0:
        entries = entries[-limit:]
    return HistoryResponse(range=key, entries=entries)


@router.get("/uptime", response_model=UptimeResponse)
async def get_uptime(range: Optional[str] = Query(None), state=Depends(get_state)):
    """窗口内每个目标的可用率"""
    key, start, end = resolve_window(range)
    services = compute_service_uptime(
        state.storage.history_since(start),
        state.config.targets,
        start,
        end,
        timedelta(minutes=state.config.interval_minutes),
    )
    return UptimeResponse(range=key, services=services)


@router.get("/timeline", response_model=TimelineResponse)
async def get_timeline(
    range: Optional[str] = Query(None),
    points: int = Query(DEFAULT_TIMELINE_POINTS, ge=1, le=MAX_TIMELINE_POINTS),
    state=Depends(get_state),
):
    """窗口内每个服务的时间线"""
    key, start, end = resolve_window(range)
    entries = [e for e in state.storage.history_since(start) if e.timestamp <= end]
    services = build_service_timelines(
        entries, state.storage.latest(), state.config.targets, start, end, points
    )
    return TimelineResponse(range=key, points=points, services=services)


@router.get("/connectivity", response_model=ConnectivityResponse)
async def get_connectivity(
    range: Optional[str] = Query(None),
    points: int = Query(DEFAULT_TIMELINE_POINTS, ge=1, le=MAX_TIMELINE_POINTS),
    state=Depends(get_state),
):
    """网络连通性历史与时间线；未启用时返回空结果"""
    key, start, end = resolve_window(range)
    storage = state.connectivity
    if storage is None:
        return ConnectivityResponse(range=key, enabled=False)

    # 窗口起点之前的样本只用于时间线沿用
    samples = storage.history_since(start - HOLDOVER_MAX)
    in_window = [s for s in samples if start <= s.checked_at <= end]
    return ConnectivityResponse(
        range=key,
        enabled=state.config.connectivity.enabled,
        latest=storage.latest(),
        history=in_window,
        timeline=build_connectivity_timeline(samples, start, end, points) if samples else [],
    )
