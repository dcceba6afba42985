"""
节点间传输 API

对端节点通过这两个端点拉取本节点的数据；配置 node_token 时需要 Bearer Token。
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ...models import NodeHistoryResponse, NodeStatusResponse
from ...windows import resolve_window, utcnow
from ..dependencies import get_state, verify_node_token

router = APIRouter(
    prefix="/api/node",
    tags=["node"],
    dependencies=[Depends(verify_node_token)],
)


@router.get("/status", response_model=NodeStatusResponse)
async def node_status(state=Depends(get_state)):
    """本节点身份、最新状态与目标列表"""
    return NodeStatusResponse(
        node=state.node,
        status=state.storage.latest(),
        connectivity=state.connectivity.latest() if state.connectivity is not None else None,
        targets=state.config.targets,
        generated_at=utcnow(),
    )


@router.get("/history", response_model=NodeHistoryResponse)
async def node_history(
    range: Optional[str] = Query(None, description="窗口：24h 或 30d"),
    limit: int = Query(0, ge=0, description="最多返回的条目数（最新的），0 表示不限制"),
    state=Depends(get_state),
):
    """
    窗口内的原始历史

    只返回原始样本，可用率和时间线由拉取方按自己的窗口重新计算。
    """
    now = utcnow()
    key, start, end = resolve_window(range, now)
    history = [e for e in state.storage.history_since(start) if e.timestamp <= end]
    if limit > 0:
        history = history[-limit:]

    connectivity = []
    if state.connectivity is not None:
        connectivity = [c for c in state.connectivity.history_since(start) if c.checked_at <= end]
        if limit > 0:
            connectivity = connectivity[-limit:]

    return NodeHistoryResponse(
        node=state.node,
        history=history,
        connectivity=connectivity,
        generated_at=now,
        range=key,
        range_start=start,
        range_end=end,
    )
