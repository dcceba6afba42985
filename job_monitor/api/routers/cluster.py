"""集群聚合 API"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from ...cluster import ClusterService
from ...models import ClusterSnapshot
from ...timeline import DEFAULT_TIMELINE_POINTS
from ..dependencies import get_cluster

router = APIRouter(prefix="/api/cluster", tags=["cluster"])


@router.get("", response_model=ClusterSnapshot)
async def get_cluster_snapshot(
    range: Optional[str] = Query(None, description="窗口：24h 或 30d"),
    points: int = Query(DEFAULT_TIMELINE_POINTS, ge=1, le=500),
    cluster: ClusterService = Depends(get_cluster),
):
    """
    本地节点与所有对端的合并视图

    本地节点排在最前；从未拉取成功的对端也会出现，只带身份与错误信息。
    """
    return await cluster.snapshot(range_key=range, points=points)
