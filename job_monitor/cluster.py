"""
集群聚合

- 按固定间隔（不低于 15s）拉取所有启用的对端节点
- 按对端缓存最近一次的结果（unknown / healthy / degraded）
- 查询时生成本地最新快照，并与缓存的对端数据合并
- 所有节点的历史都按请求窗口重新过滤，可用率和时间线在本地重新计算，
  不直接采用对端自己算出的聚合值
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Sequence

import httpx
from pydantic import BaseModel, Field, ValidationError

from .config import MIN_PEER_REFRESH_SECONDS, PeerConfig
from .models import (
    ClusterSnapshot, ConnectivityStatus, Node, NodeHistoryResponse, NodeStatusResponse,
    PeerSnapshot, PeerState, StatusEntry, Target, ensure_utc,
)
from .periodic import PeriodicTask
from .storage import ConnectivityStorage, StatusStorage
from .timeline import (
    DEFAULT_TIMELINE_POINTS, HOLDOVER_MAX, build_connectivity_timeline, build_service_timelines,
)
from .uptime import compute_service_uptime
from .windows import clamp_window, normalize_range, resolve_window, utcnow

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 10000
DEFAULT_REQUEST_TIMEOUT = 10.0


class PeerError(Exception):
    """对端拉取失败"""


class PeerUnreachableError(PeerError):
    """网络错误、超时或非 2xx 响应"""


class PeerProtocolError(PeerError):
    """响应不是合法的节点数据"""


class PeerPayload(BaseModel):
    """对端最近一次成功拉取的原始数据"""
    node: Node
    status: Optional[StatusEntry] = None
    connectivity: Optional[ConnectivityStatus] = None
    history: List[StatusEntry] = Field(default_factory=list)
    connectivity_history: List[ConnectivityStatus] = Field(default_factory=list)
    targets: List[Target] = Field(default_factory=list)


class CachedPeer(BaseModel):
    """
    对端缓存条目

    - unknown:  尚未拉取，payload 为空
    - healthy:  最近一次拉取成功
    - degraded: 最近一次拉取失败；payload 为上一次成功的数据（可能为空）
    """
    node: Node
    state: PeerState = PeerState.UNKNOWN
    payload: Optional[PeerPayload] = None
    error: Optional[str] = None
    updated_at: Optional[datetime] = None
    last_success_at: Optional[datetime] = None


class PeerCache:
    """
    对端缓存

    条目整体替换，从不原地修改；读取返回字典副本。
    """

    def __init__(self):
        self._peers: Dict[str, CachedPeer] = {}
        self._lock = asyncio.Lock()

    async def get(self, peer_id: str) -> Optional[CachedPeer]:
        async with self._lock:
            return self._peers.get(peer_id)

    async def set(self, peer_id: str, entry: CachedPeer):
        async with self._lock:
            self._peers[peer_id] = entry

    async def get_all(self) -> Dict[str, CachedPeer]:
        async with self._lock:
            return self._peers.copy()


def _describe(error: BaseException) -> str:
    text = str(error).strip()
    return text or type(error).__name__


def _in_window(timestamp: datetime, start: datetime, end: datetime) -> bool:
    return start <= timestamp <= end


def build_node_snapshot(
    node: Node,
    status: Optional[StatusEntry],
    connectivity: Optional[ConnectivityStatus],
    history: Sequence[StatusEntry],
    connectivity_history: Sequence[ConnectivityStatus],
    targets: Sequence[Target],
    start: datetime,
    end: datetime,
    points: int = DEFAULT_TIMELINE_POINTS,
    **meta,
) -> PeerSnapshot:
    """
    按窗口计算单个节点的快照

    本地节点和对端节点共用，保证同一个 ClusterSnapshot 内窗口语义一致。
    connectivity_history 可以包含窗口起点之前的样本（用于时间线沿用），
    输出中只保留窗口内的样本。
    """
    window_history = [e for e in history if _in_window(e.timestamp, start, end)]
    window_connectivity = [c for c in connectivity_history if _in_window(c.checked_at, start, end)]
    interval = timedelta(minutes=node.interval_minutes)

    return PeerSnapshot(
        node=node,
        status=status,
        connectivity=connectivity,
        history=window_history,
        connectivity_history=window_connectivity,
        services=compute_service_uptime(window_history, targets, start, end, interval),
        targets=list(targets),
        service_timelines=build_service_timelines(window_history, status, targets, start, end, points),
        connectivity_timeline=(
            build_connectivity_timeline(connectivity_history, start, end, points)
            if connectivity_history else []
        ),
        **meta,
    )


class ClusterService(PeriodicTask):
    """本地存储 + 对端快照的聚合服务"""

    name = "cluster-refresh"

    def __init__(
        self,
        node: Node,
        storage: StatusStorage,
        targets: Sequence[Target],
        peers: Sequence[PeerConfig] = (),
        refresh_seconds: float = 60,
        connectivity: Optional[ConnectivityStorage] = None,
        history_range: str = "30d",
        history_limit: int = DEFAULT_HISTORY_LIMIT,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(max(refresh_seconds, MIN_PEER_REFRESH_SECONDS))
        self.node = node
        self.storage = storage
        self.connectivity = connectivity
        self.targets = list(targets)
        self.peers = [peer for peer in peers if peer.enabled]
        self.history_range = normalize_range(history_range)
        self.history_limit = history_limit
        self.timeout = timeout

        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._cache = PeerCache()
        self._known: Dict[str, Node] = {
            peer.id: Node(id=peer.id, name=peer.name or peer.id) for peer in self.peers
        }

    # =========================================================================
    # 后台刷新
    # =========================================================================

    async def tick(self):
        await self.refresh_all()

    async def close(self):
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()

    async def refresh_all(self):
        """并发拉取所有对端；单个对端失败不影响其他对端"""
        if not self.peers:
            return
        await asyncio.gather(*(self.refresh_peer(peer) for peer in self.peers))
        logger.debug(f"Refreshed {len(self.peers)} peers")

    async def refresh_peer(self, peer: PeerConfig):
        now = utcnow()
        try:
            payload = await asyncio.wait_for(self.fetch_peer(peer), timeout=self.timeout * 2)
        except asyncio.TimeoutError:
            await self._record_failure(peer, "peer fetch timed out", now)
        except PeerError as e:
            await self._record_failure(peer, str(e), now)
        except Exception as e:
            logger.error(f"Unexpected error fetching peer {peer.id}: {e}", exc_info=True)
            await self._record_failure(peer, _describe(e), now)
        else:
            await self._cache.set(peer.id, CachedPeer(
                node=payload.node,
                state=PeerState.HEALTHY,
                payload=payload,
                updated_at=now,
                last_success_at=now,
            ))

    async def _record_failure(self, peer: PeerConfig, error: str, now: datetime):
        logger.warning(f"Failed to fetch peer {peer.id}: {error}")
        previous = await self._cache.get(peer.id)
        await self._cache.set(peer.id, CachedPeer(
            node=previous.node if previous else self._known[peer.id],
            state=PeerState.DEGRADED,
            payload=previous.payload if previous else None,
            error=error,
            updated_at=now,
            last_success_at=previous.last_success_at if previous else None,
        ))

    async def _get_json(self, url: str, api_key: str, params: Optional[dict] = None) -> dict:
        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        response = await self._client.get(url, headers=headers, params=params, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    async def fetch_peer(self, peer: PeerConfig) -> PeerPayload:
        """
        拉取单个对端的状态和历史

        Raises:
            PeerUnreachableError: 网络错误、超时或 HTTP 错误
            PeerProtocolError: 响应内容不合法
        """
        base_url = peer.base_url.strip().rstrip("/")
        if not base_url:
            raise PeerProtocolError(f"peer {peer.id} has empty base_url")

        try:
            status_data = await self._get_json(f"{base_url}/api/node/status", peer.api_key)
        except httpx.InvalidURL as e:
            raise PeerProtocolError(f"invalid base_url {base_url!r}: {_describe(e)}") from e
        except httpx.HTTPError as e:
            raise PeerUnreachableError(f"status fetch failed: {_describe(e)}") from e
        except ValueError as e:
            raise PeerProtocolError(f"status fetch failed: invalid JSON: {_describe(e)}") from e

        try:
            history_data = await self._get_json(
                f"{base_url}/api/node/history",
                peer.api_key,
                params={"range": self.history_range, "limit": self.history_limit},
            )
        except httpx.HTTPError as e:
            raise PeerUnreachableError(f"history fetch failed: {_describe(e)}") from e
        except ValueError as e:
            raise PeerProtocolError(f"history fetch failed: invalid JSON: {_describe(e)}") from e

        try:
            status = NodeStatusResponse.model_validate(status_data)
            history = NodeHistoryResponse.model_validate(history_data)
        except ValidationError as e:
            raise PeerProtocolError(f"invalid peer payload: {e.error_count()} validation errors") from e

        history_entries = history.history
        if self.history_limit > 0 and len(history_entries) > self.history_limit:
            history_entries = history_entries[-self.history_limit:]

        # 节点身份以本地配置为准，名称依次回退到对端上报的名称和 id
        node = status.node.model_copy(update={
            "id": peer.id,
            "name": peer.name or status.node.name or peer.id,
        })
        return PeerPayload(
            node=node,
            status=status.status,
            connectivity=status.connectivity,
            history=history_entries,
            connectivity_history=history.connectivity,
            targets=status.targets,
        )

    # =========================================================================
    # 查询
    # =========================================================================

    def local_snapshot(self, start: datetime, end: datetime,
                       points: int = DEFAULT_TIMELINE_POINTS, now: Optional[datetime] = None) -> PeerSnapshot:
        """本地节点快照（每次都从存储重新计算）"""
        if now is None:
            now = utcnow()
        connectivity_history: List[ConnectivityStatus] = []
        latest_connectivity = None
        if self.connectivity is not None:
            connectivity_history = self.connectivity.history_since(start - HOLDOVER_MAX)
            latest_connectivity = self.connectivity.latest()

        return build_node_snapshot(
            node=self.node,
            status=self.storage.latest(),
            connectivity=latest_connectivity,
            history=self.storage.history_since(start),
            connectivity_history=connectivity_history,
            targets=self.targets,
            start=start,
            end=end,
            points=points,
            updated_at=now,
            last_success_at=now,
            source="local",
            state=PeerState.HEALTHY,
        )

    @staticmethod
    def peer_snapshot(cached: CachedPeer, start: datetime, end: datetime,
                      points: int = DEFAULT_TIMELINE_POINTS) -> PeerSnapshot:
        """按窗口重新计算缓存的对端数据"""
        meta = dict(
            updated_at=cached.updated_at,
            last_success_at=cached.last_success_at,
            error=cached.error,
            source="peer",
            state=cached.state,
        )
        payload = cached.payload
        if payload is None:
            return PeerSnapshot(node=cached.node, **meta)
        return build_node_snapshot(
            node=payload.node,
            status=payload.status,
            connectivity=payload.connectivity,
            history=payload.history,
            connectivity_history=payload.connectivity_history,
            targets=payload.targets,
            start=start,
            end=end,
            points=points,
            **meta,
        )

    async def snapshot(
        self,
        range_key: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        points: int = DEFAULT_TIMELINE_POINTS,
    ) -> ClusterSnapshot:
        """
        合并本地与所有对端的数据

        给定 start 时使用自定义窗口 [start, end]（end 默认为当前时间），
        否则按 range_key 解析。本地节点排在最前，对端按名称排序。
        """
        now = utcnow()
        if start is None:
            range_key, start, end = resolve_window(range_key, now)
        else:
            range_key = "custom"
            start, end = clamp_window(ensure_utc(start), ensure_utc(end or now), now)

        nodes = [self.local_snapshot(start, end, points, now)]

        cached = await self._cache.get_all()
        entries = [
            cached.get(peer_id) or CachedPeer(node=node)
            for peer_id, node in self._known.items()
        ]
        entries.sort(key=lambda c: ((c.node.name or c.node.id).lower(), c.node.id))
        nodes.extend(self.peer_snapshot(entry, start, end, points) for entry in entries)

        return ClusterSnapshot(
            generated_at=now,
            range=range_key,
            range_start=start,
            range_end=end,
            nodes=nodes,
        )
