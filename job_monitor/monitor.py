"""
采集循环

- Monitor：每个间隔探测所有目标一次（systemd 服务或 HTTP 地址），追加一条 StatusEntry
- ConnectivityMonitor：定期 TCP 连接探测网络连通性，追加 ConnectivityStatus

目标失败是数据（ok=False），不抛异常；落盘失败只记录日志，循环继续。
"""

import asyncio
import logging
import time
from datetime import timedelta
from typing import Optional, Sequence, Tuple

import httpx

from .models import CheckResult, ConnectivityStatus, StatusEntry, Target
from .periodic import PeriodicTask
from .storage import ConnectivityStorage, StatusStorage, StorageError
from .windows import utcnow

logger = logging.getLogger(__name__)

DEFAULT_CHECK_TIMEOUT = 15
MIN_MONITOR_INTERVAL = timedelta(minutes=1)
DEFAULT_CONNECTIVITY_TARGET = "1.1.1.1"
DEFAULT_CONNECTIVITY_PORT = 53


async def query_service_state(unit: str, timeout: float) -> Tuple[str, str]:
    """
    查询 systemd 服务状态

    Returns:
        (ActiveState, SubState)；查询失败时为 ("unknown", "unknown")
    """
    proc = await asyncio.create_subprocess_exec(
        "systemctl", "show", unit, "--property=ActiveState,SubState",
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, _ = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise

    if proc.returncode != 0:
        return "unknown", "unknown"

    # 格式:
    # ActiveState=active
    # SubState=running
    active_state = "unknown"
    sub_state = "unknown"
    for line in stdout.decode().strip().splitlines():
        if "=" in line:
            key, value = line.split("=", 1)
            if key == "ActiveState":
                active_state = value
            elif key == "SubState":
                sub_state = value
    return active_state, sub_state


async def check_service(target: Target, timeout: float) -> CheckResult:
    """探测 systemd 服务：ActiveState 为 active 视为正常"""
    try:
        active_state, sub_state = await query_service_state(target.service, timeout)
    except asyncio.TimeoutError:
        return CheckResult(id=target.id, name=target.display_name, error="systemctl timed out")
    except OSError as e:
        return CheckResult(id=target.id, name=target.display_name, error=str(e))

    ok = active_state == "active"
    return CheckResult(
        id=target.id,
        name=target.display_name,
        ok=ok,
        state=active_state,
        error=None if ok else f"{active_state} ({sub_state})",
    )


async def check_http(client: httpx.AsyncClient, target: Target, timeout: float) -> CheckResult:
    """探测 HTTP 地址：2xx/3xx 视为正常"""
    started = time.monotonic()
    try:
        response = await client.get(target.url, timeout=timeout)
    except httpx.TimeoutException:
        return CheckResult(id=target.id, name=target.display_name, error="request timed out")
    except httpx.HTTPError as e:
        return CheckResult(id=target.id, name=target.display_name, error=str(e) or type(e).__name__)

    latency = round((time.monotonic() - started) * 1000, 1)
    ok = 200 <= response.status_code < 400
    return CheckResult(
        id=target.id,
        name=target.display_name,
        ok=ok,
        status_code=response.status_code,
        latency_ms=latency,
        error=None if ok else (response.reason_phrase or f"HTTP {response.status_code}"),
    )


class Monitor(PeriodicTask):
    """按固定间隔探测所有目标并写入 StatusStorage"""

    name = "monitor"

    def __init__(self, interval: timedelta, targets: Sequence[Target], storage: StatusStorage,
                 client: Optional[httpx.AsyncClient] = None):
        interval = max(interval, MIN_MONITOR_INTERVAL)
        super().__init__(interval.total_seconds())
        self.targets = list(targets)
        self.storage = storage
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(follow_redirects=True)

    async def check_target(self, target: Target) -> CheckResult:
        timeout = target.timeout_seconds if target.timeout_seconds > 0 else DEFAULT_CHECK_TIMEOUT
        if target.service:
            return await check_service(target, timeout)
        return await check_http(self._client, target, timeout)

    async def run_once(self) -> StatusEntry:
        """
        执行一轮探测并追加到历史

        Raises:
            StorageError: 落盘失败（内存历史不变）
        """
        timestamp = utcnow()
        checks = await asyncio.gather(*(self.check_target(t) for t in self.targets))
        entry = StatusEntry(timestamp=timestamp, checks=tuple(checks))
        await asyncio.to_thread(self.storage.append, entry)
        return entry

    async def tick(self):
        try:
            entry = await self.run_once()
        except StorageError as e:
            logger.error(f"Failed to persist status entry: {e}")
            return
        failed = sum(1 for c in entry.checks if not c.ok)
        logger.debug(f"Checked {len(entry.checks)} targets ({failed} failing)")

    async def close(self):
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()


def connectivity_history_cap(interval_seconds: int) -> int:
    """连通性历史上限：30 天的样本数 + 128，限制在 [2048, 100000]"""
    if interval_seconds <= 0:
        interval_seconds = 60
    slots = int(timedelta(days=30).total_seconds() // interval_seconds) + 128
    return min(max(slots, 2048), 100000)


def split_address(target: str) -> Tuple[str, int]:
    """"host" 或 "host:port"，未指定端口时使用 53"""
    target = target.strip() or DEFAULT_CONNECTIVITY_TARGET
    host, sep, port = target.rpartition(":")
    if sep and host and port.isdigit():
        return host.strip("[]"), int(port)
    return target, DEFAULT_CONNECTIVITY_PORT


class ConnectivityMonitor(PeriodicTask):
    """定期 TCP 连接探测，结果写入 ConnectivityStorage"""

    name = "connectivity-monitor"

    def __init__(self, target: str, interval_seconds: int, timeout_seconds: float,
                 storage: ConnectivityStorage, enabled: bool = True):
        super().__init__(interval_seconds if interval_seconds > 0 else 60)
        self.target = target.strip() or DEFAULT_CONNECTIVITY_TARGET
        self.timeout = timeout_seconds if timeout_seconds > 0 else 4
        self.storage = storage
        self.enabled = enabled

    def start(self):
        if not self.enabled:
            logger.info("Connectivity monitor disabled")
            return
        super().start()

    async def check_once(self) -> ConnectivityStatus:
        host, port = split_address(self.target)
        started = time.monotonic()
        try:
            _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=self.timeout)
        except asyncio.TimeoutError:
            return ConnectivityStatus(target=self.target, error="connection timed out", checked_at=utcnow())
        except OSError as e:
            return ConnectivityStatus(target=self.target, error=str(e) or type(e).__name__, checked_at=utcnow())

        latency = int((time.monotonic() - started) * 1000)
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return ConnectivityStatus(target=self.target, ok=True, latency_ms=latency, checked_at=utcnow())

    async def tick(self):
        status = await self.check_once()
        try:
            await asyncio.to_thread(self.storage.append, status)
        except StorageError as e:
            logger.error(f"Failed to persist connectivity sample: {e}")
