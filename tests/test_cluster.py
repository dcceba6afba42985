"""
单元测试：集群聚合

对端通过 httpx.MockTransport 模拟。

测试覆盖：
- 对端拉取成功：数据按请求窗口重新计算
- 对端超时：本地数据不受影响，对端只带身份、错误与刷新时间
- 拉取失败时保留上一次成功的数据
- 认证头、名称优先级、节点排序
- 后台任务的启动/停止
"""

import asyncio
from datetime import timedelta

import httpx
import pytest

from job_monitor.cluster import ClusterService
from job_monitor.config import PeerConfig
from job_monitor.models import (
    BucketState, Node, NodeHistoryResponse, NodeStatusResponse, PeerState, Target,
)
from job_monitor.storage import StatusStorage
from job_monitor.windows import utcnow

from conftest import make_entry, make_sample

LOCAL = Node(id="local", name="Local", interval_minutes=5)


def peer_payloads(node_name="Remote", days=2):
    """对端的 /api/node/status 与 /api/node/history 响应"""
    now = utcnow()
    history = [
        make_entry(now - timedelta(hours=hours) + timedelta(minutes=30), ("redis", hours % 2 == 0))
        for hours in range(days * 24, 0, -1)
    ]
    node = Node(id="remote-self-reported", name=node_name, interval_minutes=60)
    status = NodeStatusResponse(
        node=node,
        status=history[-1],
        connectivity=make_sample(now - timedelta(minutes=1)),
        targets=[Target(id="redis", name="Redis", service="redis.service")],
        generated_at=now,
    )
    history_response = NodeHistoryResponse(
        node=node,
        history=history,
        connectivity=[make_sample(now - timedelta(minutes=m)) for m in range(10, 0, -1)],
        generated_at=now,
        range="30d",
        range_start=now - timedelta(days=30),
        range_end=now,
    )
    return status.model_dump(mode="json"), history_response.model_dump(mode="json")


def peer_handler(status_data, history_data, seen=None):
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        if request.url.path == "/api/node/status":
            return httpx.Response(200, json=status_data)
        if request.url.path == "/api/node/history":
            return httpx.Response(200, json=history_data)
        return httpx.Response(404)
    return handler


def timeout_handler(request: httpx.Request) -> httpx.Response:
    raise httpx.ReadTimeout("timed out", request=request)


@pytest.fixture
def storage(tmp_path):
    storage = StatusStorage(tmp_path / "history.json")
    now = utcnow()
    for minutes in range(60, 0, -5):
        storage.append(make_entry(now - timedelta(minutes=minutes), ("web", True)))
    return storage


def make_service(storage, handler, peers=None, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    if peers is None:
        peers = [PeerConfig(id="gpu-02", name="", base_url="http://peer.local:8080/", api_key="secret")]
    service = ClusterService(
        node=LOCAL,
        storage=storage,
        targets=[Target(id="web", name="Web", service="nginx")],
        peers=peers,
        client=client,
        **kwargs,
    )
    return service, client


class TestClusterSnapshot:
    """集群快照测试"""

    def test_healthy_peer(self, storage):
        """测试：对端数据拉取成功并按窗口重新计算"""
        status_data, history_data = peer_payloads()
        seen = []

        async def scenario():
            service, client = make_service(storage, peer_handler(status_data, history_data, seen))
            async with client:
                await service.refresh_all()
                return await service.snapshot("24h")

        cluster = asyncio.run(scenario())

        assert [n.node.id for n in cluster.nodes] == ["local", "gpu-02"]
        peer = cluster.nodes[1]
        assert peer.state == PeerState.HEALTHY
        assert peer.source == "peer"
        assert peer.error is None
        # 名称：配置为空时采用对端上报的名称
        assert peer.node.name == "Remote"
        # 48 小时的历史只保留 24h 窗口内的部分
        assert all(e.timestamp >= cluster.range_start for e in peer.history)
        assert len(peer.history) == 24
        [uptime] = peer.services
        assert uptime.id == "redis"
        assert uptime.name == "Redis"
        assert uptime.uptime_percent == 50.0
        assert [t.service_id for t in peer.service_timelines] == ["redis"]
        assert len(peer.connectivity_timeline) == 80

        # 请求头与查询参数
        assert [r.url.path for r in seen] == ["/api/node/status", "/api/node/history"]
        assert all(r.headers["authorization"] == "Bearer secret" for r in seen)
        assert seen[1].url.params["range"] == "30d"
        assert seen[1].url.params["limit"] == "10000"

    def test_window_changes_peer_numbers(self, storage):
        status_data, history_data = peer_payloads()

        async def scenario():
            service, client = make_service(storage, peer_handler(status_data, history_data))
            async with client:
                await service.refresh_all()
                return await service.snapshot("24h"), await service.snapshot("30d")

        day, month = asyncio.run(scenario())

        assert len(day.nodes[1].history) == 24
        assert len(month.nodes[1].history) == 48
        assert month.range == "30d"

    def test_peer_timeout_keeps_local_data(self, storage):
        """测试：对端超时，本地数据完整，对端只带身份、错误与刷新时间"""
        async def scenario():
            service, client = make_service(storage, timeout_handler)
            async with client:
                baseline = await service.snapshot("24h")
                await service.refresh_all()
                return baseline, await service.snapshot("24h")

        baseline, cluster = asyncio.run(scenario())

        local = cluster.nodes[0]
        assert local.node.id == "local"
        assert local.source == "local"
        assert local.services == baseline.nodes[0].services
        assert len(local.history) == 12

        peer = cluster.nodes[1]
        assert peer.node.id == "gpu-02"
        assert peer.state == PeerState.DEGRADED
        assert "timed out" in peer.error
        assert peer.updated_at is not None
        assert peer.last_success_at is None
        assert peer.history == []
        assert peer.services == []
        assert peer.service_timelines == []

    def test_degraded_peer_keeps_last_good_data(self, storage):
        """测试：拉取失败时保留上一次成功的数据"""
        status_data, history_data = peer_payloads()
        responses = {"fail": False}

        def handler(request):
            if responses["fail"]:
                return httpx.Response(503)
            return peer_handler(status_data, history_data)(request)

        async def scenario():
            service, client = make_service(storage, handler)
            async with client:
                await service.refresh_all()
                responses["fail"] = True
                await service.refresh_all()
                return await service.snapshot("24h")

        peer = asyncio.run(scenario()).nodes[1]

        assert peer.state == PeerState.DEGRADED
        assert "503" in peer.error
        assert len(peer.history) == 24
        assert peer.last_success_at is not None
        assert peer.last_success_at <= peer.updated_at

    def test_invalid_payload(self, storage):
        def handler(request):
            return httpx.Response(200, json={"node": "nope"})

        async def scenario():
            service, client = make_service(storage, handler)
            async with client:
                await service.refresh_all()
                return await service.snapshot()

        peer = asyncio.run(scenario()).nodes[1]

        assert peer.state == PeerState.DEGRADED
        assert "invalid peer payload" in peer.error

    def test_invalid_base_url_recorded_as_error(self, storage):
        """测试：base_url 非法时记录为该对端的错误，不影响其他对端"""
        peers = [
            PeerConfig(id="bad", name="Bad", base_url="http://[::1/x"),
            PeerConfig(id="good", name="Good", base_url="http://peer.local"),
        ]

        def handler(request):
            return httpx.Response(503)

        async def scenario():
            service, client = make_service(storage, handler, peers=peers)
            async with client:
                await service.refresh_all()
                return await service.snapshot()

        nodes = {n.node.id: n for n in asyncio.run(scenario()).nodes}

        assert nodes["bad"].state == PeerState.DEGRADED
        assert "invalid base_url" in nodes["bad"].error
        assert nodes["good"].state == PeerState.DEGRADED
        assert "503" in nodes["good"].error
        assert nodes["local"].state == PeerState.HEALTHY

    def test_unexpected_error_marks_peer_degraded(self, storage):
        """测试：拉取中的意外异常同样记录为错误，并保留上一次成功的数据"""
        status_data, history_data = peer_payloads()
        responses = {"broken": False}

        def handler(request):
            if responses["broken"]:
                raise RuntimeError("transport exploded")
            return peer_handler(status_data, history_data)(request)

        async def scenario():
            service, client = make_service(storage, handler)
            async with client:
                await service.refresh_all()
                responses["broken"] = True
                await service.refresh_all()
                return await service.snapshot("24h")

        peer = asyncio.run(scenario()).nodes[1]

        assert peer.state == PeerState.DEGRADED
        assert peer.error == "transport exploded"
        assert len(peer.history) == 24

    def test_unknown_peer_before_first_refresh(self, storage):
        async def scenario():
            service, client = make_service(storage, timeout_handler)
            async with client:
                return await service.snapshot()

        cluster = asyncio.run(scenario())

        assert cluster.range == "24h"
        peer = cluster.nodes[1]
        assert peer.state == PeerState.UNKNOWN
        assert peer.node.name == "gpu-02"
        assert peer.updated_at is None

    def test_peers_sorted_by_name_after_local(self, storage):
        peers = [
            PeerConfig(id="c", name="zeta", base_url="http://c"),
            PeerConfig(id="a", name="Alpha", base_url="http://a"),
            PeerConfig(id="b", name="alpha", base_url="http://b"),
            PeerConfig(id="off", name="Aaa", base_url="http://off", enabled=False),
        ]

        async def scenario():
            service, client = make_service(storage, timeout_handler, peers=peers)
            async with client:
                return await service.snapshot()

        cluster = asyncio.run(scenario())

        assert [n.node.id for n in cluster.nodes] == ["local", "a", "b", "c"]

    def test_configured_name_wins(self, storage):
        status_data, history_data = peer_payloads(node_name="remote-name")
        peers = [PeerConfig(id="gpu-02", name="GPU 02", base_url="http://peer.local")]

        async def scenario():
            service, client = make_service(storage, peer_handler(status_data, history_data), peers=peers)
            async with client:
                await service.refresh_all()
                return await service.snapshot()

        peer = asyncio.run(scenario()).nodes[1]

        assert peer.node.id == "gpu-02"
        assert peer.node.name == "GPU 02"
        assert peer.node.interval_minutes == 60

    def test_custom_window(self, storage):
        now = utcnow()

        async def scenario():
            service, client = make_service(storage, timeout_handler, peers=[])
            async with client:
                return await service.snapshot(start=now - timedelta(minutes=32), end=now + timedelta(hours=1))

        cluster = asyncio.run(scenario())

        assert cluster.range == "custom"
        assert cluster.range_end <= utcnow()
        assert len(cluster.nodes) == 1
        assert len(cluster.nodes[0].history) == 6

    def test_local_connectivity_timeline(self, storage, tmp_path):
        from job_monitor.storage import ConnectivityStorage

        connectivity = ConnectivityStorage(tmp_path / "connectivity.json")
        now = utcnow()
        for minutes in range(120, 0, -1):
            connectivity.append(make_sample(now - timedelta(minutes=minutes)))

        async def scenario():
            service, client = make_service(storage, timeout_handler, peers=[], connectivity=connectivity)
            async with client:
                return await service.snapshot(start=now - timedelta(minutes=30), end=now, points=3)

        local = asyncio.run(scenario()).nodes[0]

        assert [p.state for p in local.connectivity_timeline] == [BucketState.SUCCESS] * 3
        assert all(c.checked_at >= now - timedelta(minutes=30) for c in local.connectivity_history)
        assert local.connectivity.checked_at == now - timedelta(minutes=1)


class TestClusterServiceLifecycle:
    """后台刷新任务"""

    def test_refresh_interval_floor(self, storage):
        service, _ = make_service(storage, timeout_handler, refresh_seconds=1)

        assert service.interval == 15

    def test_start_refreshes_immediately_and_stop_is_idempotent(self, storage):
        status_data, history_data = peer_payloads()
        seen = []

        async def scenario():
            service, client = make_service(storage, peer_handler(status_data, history_data, seen))
            async with client:
                service.start()
                service.start()
                cluster = await service.snapshot()
                for _ in range(100):
                    if cluster.nodes[1].state == PeerState.HEALTHY:
                        break
                    await asyncio.sleep(0.01)
                    cluster = await service.snapshot()
                running = service.running
                await service.stop()
                await service.stop()
                return running, service.running, cluster

        was_running, still_running, cluster = asyncio.run(scenario())

        assert was_running
        assert not still_running
        assert len(seen) == 2
        assert cluster.nodes[1].state == PeerState.HEALTHY

    def test_stop_without_start(self, storage):
        service, client = make_service(storage, timeout_handler)

        async def scenario():
            async with client:
                await service.stop()

        asyncio.run(scenario())
        assert not service.running
