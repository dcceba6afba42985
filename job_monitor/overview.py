"""
多节点概览

最近 3 个 10 分钟桶 × 有限数量的实体。
实体按节点分组，在数量受限时按节点轮询选取，保证每个节点都有代表。
"""

from datetime import timedelta
from typing import List, Sequence, Tuple, TypeVar

from .models import (
    BucketState, ClusterSnapshot, OverviewBucket, OverviewItem, OverviewSnapshot,
    PeerSnapshot, TimelinePoint,
)
from .timeline import EntityDirectory
from .windows import utcnow

OVERVIEW_BUCKET_MINUTES = 10
OVERVIEW_BUCKET_COUNT = 3
OVERVIEW_BUCKET_SECONDS = OVERVIEW_BUCKET_MINUTES * 60

STATE_OK = "ok"
STATE_ISSUE = "issue"
STATE_UNKNOWN = "unknown"

T = TypeVar("T")


def overview_window(now=None):
    """概览窗口 [now - 30min, now]"""
    if now is None:
        now = utcnow()
    return now - timedelta(minutes=OVERVIEW_BUCKET_MINUTES * OVERVIEW_BUCKET_COUNT), now


def collapse_state(state: BucketState) -> str:
    """时间线五态折叠为 ok / issue / unknown"""
    if state == BucketState.SUCCESS:
        return STATE_OK
    if state in (BucketState.WARNING, BucketState.ERROR):
        return STATE_ISSUE
    return STATE_UNKNOWN


def to_overview_bucket(point: TimelinePoint) -> OverviewBucket:
    detail = None
    if point.details:
        first = point.details[0]
        detail = first.state or first.error
    return OverviewBucket(
        start=point.start,
        end=point.end,
        state=collapse_state(point.state),
        detail=detail,
    )


def round_robin_select(groups: Sequence[Sequence[T]], limit: int) -> List[T]:
    """
    按组轮询选取

    每轮从每个组各取一个，直到达到 limit 或所有组取完；limit <= 0 表示不限制。
    返回顺序为选取顺序。
    """
    if limit <= 0:
        return [member for group in groups for member in group]

    selected: List[T] = []
    depth = 0
    while len(selected) < limit:
        progressed = False
        for group in groups:
            if depth >= len(group):
                continue
            selected.append(group[depth])
            progressed = True
            if len(selected) >= limit:
                break
        if not progressed:
            break
        depth += 1
    return selected


def order_node_services(node: PeerSnapshot) -> List[Tuple[str, str, List[TimelinePoint]]]:
    """
    节点内的实体排序

    已配置的目标按配置顺序排在前面，其余按显示名（不区分大小写），同名按 id。
    """
    directory = EntityDirectory(node.targets)

    def sort_key(timeline):
        index = directory.target_index(timeline.service_id)
        if index is not None:
            return (0, index, "", "")
        return (1, 0, timeline.service_name.lower(), timeline.service_id)

    return [
        (timeline.service_id, timeline.service_name, timeline.timeline)
        for timeline in sorted(node.service_timelines, key=sort_key)
    ]


def order_nodes(nodes: Sequence[PeerSnapshot]) -> List[PeerSnapshot]:
    """本地节点优先，对端按名称排序"""
    local = [n for n in nodes if n.source == "local"]
    peers = sorted(
        (n for n in nodes if n.source != "local"),
        key=lambda n: ((n.node.name or n.node.id).lower(), n.node.id),
    )
    return local + peers


def build_overview(cluster: ClusterSnapshot, limit: int = 0) -> OverviewSnapshot:
    """
    从集群快照生成概览

    cluster 应当按概览窗口（3 个 10 分钟桶）生成。
    服务实体受 limit 限制；每个有连通性数据的节点另外给出一行连通性，不计入 limit。
    """
    nodes = order_nodes(cluster.nodes)

    groups: List[List[Tuple[int, int, OverviewItem]]] = []
    connectivity: List[OverviewItem] = []
    for node_index, node in enumerate(nodes):
        node_name = node.node.name or node.node.id
        group = []
        for member_index, (service_id, service_name, timeline) in enumerate(order_node_services(node)):
            group.append((node_index, member_index, OverviewItem(
                id=f"{node.node.id}:{service_id}",
                name=service_name,
                kind="service",
                node_id=node.node.id,
                node_name=node_name,
                buckets=[to_overview_bucket(point) for point in timeline],
            )))
        groups.append(group)

        if node.connectivity_timeline:
            connectivity.append(OverviewItem(
                id=f"{node.node.id}:connectivity",
                name="Connectivity",
                kind="connectivity",
                node_id=node.node.id,
                node_name=node_name,
                buckets=[to_overview_bucket(point) for point in node.connectivity_timeline],
            ))

    # 轮询决定选哪些，输出仍按节点分组，保持视图稳定
    selected = round_robin_select(groups, limit)
    selected.sort(key=lambda member: (member[0], member[1]))

    return OverviewSnapshot(
        generated_at=cluster.generated_at,
        range_start=cluster.range_start,
        range_end=cluster.range_end,
        bucket_seconds=OVERVIEW_BUCKET_SECONDS,
        items=[item for _, _, item in selected],
        connectivity=connectivity,
        nodes=[node.node for node in nodes],
    )


async def overview_snapshot(service, limit: int = 0, now=None) -> OverviewSnapshot:
    """按概览窗口拉取集群快照并生成概览"""
    start, end = overview_window(now)
    cluster = await service.snapshot(start=start, end=end, points=OVERVIEW_BUCKET_COUNT)
    return build_overview(cluster, limit)
