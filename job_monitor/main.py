"""
主程序入口

启动四个并发任务：
1. 目标探测循环
2. 连通性探测循环（可选）
3. 对端刷新循环
4. REST API 服务
"""

import asyncio
import logging
import os
import sys
from datetime import timedelta
from pathlib import Path

import uvicorn

from . import __version__
from .cluster import ClusterService
from .config import AppConfig, ConfigError, get_config
from .models import Node
from .monitor import ConnectivityMonitor, Monitor, connectivity_history_cap
from .storage import ConnectivityStorage, MalformedHistoryError, StatusStorage

logger = logging.getLogger(__name__)


def setup_logging(config: AppConfig):
    """配置日志"""
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    level = getattr(logging, config.logging.level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format=log_format,
        handlers=[logging.StreamHandler(sys.stdout)]
    )

    if config.logging.file:
        log_path = Path(config.logging.file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(str(log_path), encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(log_format))
        logging.getLogger().addHandler(file_handler)

    # 降低第三方库日志级别
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(logging.INFO)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def acquire_single_instance_lock(lock_path: Path):
    """
    防止同一数据目录下启动多个实例（多实例会交替覆盖历史文件）。

    通过文件锁实现：同一路径下只能有一个进程持锁。
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    handle = open(lock_path, "a+b")
    handle.seek(0)

    try:
        if os.name == "nt":
            import msvcrt  # type: ignore

            if handle.read(1) == b"":
                handle.write(b"0")
                handle.flush()
            handle.seek(0)
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        else:
            import fcntl  # type: ignore

            fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
    except OSError as e:
        handle.close()
        raise RuntimeError(f"Another Job Monitor instance is already running (lock: {lock_path})") from e

    try:
        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()).encode("utf-8"))
        handle.flush()
    except OSError as e:
        # 写 PID 失败不影响锁语义
        logger.debug(f"Failed to write pid to lock file: {e}")

    return handle


def build_node(config: AppConfig) -> Node:
    return Node(
        id=config.node_id,
        name=config.node_name or config.node_id,
        interval_minutes=config.interval_minutes,
        connectivity_interval_seconds=(
            config.connectivity.interval_seconds if config.connectivity.enabled else 0
        ),
    )


async def run_api_server(app, config: AppConfig):
    """运行 API 服务器"""
    server_config = uvicorn.Config(
        app=app,
        host=config.api.host,
        port=config.api.port,
        log_level="info",
        access_log=False  # 我们用自己的日志
    )
    server = uvicorn.Server(server_config)
    await server.serve()


async def run(config: AppConfig):
    """打开存储、启动后台任务并运行 API，退出时停止所有任务"""
    from .api.app import AppState, create_app

    storage = StatusStorage(config.history_path)
    logger.info(f"Status history: {config.history_path} ({len(storage)} entries)")

    connectivity = None
    if config.connectivity.enabled:
        connectivity = ConnectivityStorage(
            config.connectivity_path,
            max_history=connectivity_history_cap(config.connectivity.interval_seconds),
        )
        logger.info(f"Connectivity history: {config.connectivity_path} ({len(connectivity)} samples)")

    node = build_node(config)
    monitor = Monitor(timedelta(minutes=config.interval_minutes), config.targets, storage)
    connectivity_monitor = None
    if connectivity is not None:
        connectivity_monitor = ConnectivityMonitor(
            config.connectivity.target,
            config.connectivity.interval_seconds,
            config.connectivity.timeout_seconds,
            connectivity,
        )
    cluster = ClusterService(
        node=node,
        storage=storage,
        targets=config.targets,
        peers=config.enabled_peers(),
        refresh_seconds=config.peer_refresh,
        connectivity=connectivity,
        history_range=config.peer_history_range,
        history_limit=config.peer_history_limit,
        timeout=config.peer_timeout_seconds,
    )

    app = create_app(AppState(
        config=config,
        node=node,
        storage=storage,
        cluster=cluster,
        connectivity=connectivity,
    ))

    tasks = [task for task in (monitor, connectivity_monitor, cluster) if task is not None]
    for task in tasks:
        task.start()
    logger.info(f"Started {len(tasks)} background tasks, {len(config.enabled_peers())} peers")

    try:
        await run_api_server(app, config)
    finally:
        for task in tasks:
            await task.stop()
        logger.info("Background tasks stopped")


async def main():
    """主函数：启动所有任务"""
    try:
        config = get_config()
    except ConfigError as e:
        logging.basicConfig(level=logging.INFO)
        logger.error(f"Invalid configuration: {e}")
        return 1

    setup_logging(config)
    logger.info("=" * 60)
    logger.info(f"Job Monitor v{__version__}")
    logger.info("=" * 60)
    logger.info(f"Node: {config.node_id} ({config.node_name}), API={config.api.host}:{config.api.port}")
    logger.info(f"Monitoring {len(config.targets)} targets every {config.interval_minutes} minutes")

    # 单实例锁：避免重复启动
    try:
        lock_handle = acquire_single_instance_lock(Path(config.data_directory) / "job-monitor.lock")
    except RuntimeError as e:
        logger.error(str(e))
        return 1

    try:
        await run(config)
    except MalformedHistoryError as e:
        logger.error(f"Refusing to start: {e}")
        return 1
    except asyncio.CancelledError:
        logger.info("Tasks cancelled, shutting down...")
    finally:
        lock_handle.close()
    return 0


def cli():
    """命令行入口"""
    try:
        code = asyncio.run(main())
    except KeyboardInterrupt:
        print("\nShutdown requested, exiting...")
        sys.exit(0)
    sys.exit(code)


if __name__ == "__main__":
    cli()
