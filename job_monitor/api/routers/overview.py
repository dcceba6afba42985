"""
多节点概览 API

- GET /api/overview：一次性快照
- WS /api/overview/ws：连接后立即推送一次，之后每 60 秒推送一次
"""

import asyncio
import logging
from contextlib import suppress

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from ...cluster import ClusterService
from ...models import OverviewSnapshot
from ...overview import overview_snapshot
from ..dependencies import get_cluster, get_ws_cluster

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/overview", tags=["overview"])

OVERVIEW_PUSH_INTERVAL = 60
OVERVIEW_WRITE_TIMEOUT = 5
DEFAULT_OVERVIEW_LIMIT = 12


@router.get("", response_model=OverviewSnapshot)
async def get_overview(
    limit: int = Query(DEFAULT_OVERVIEW_LIMIT, ge=0, description="最多返回的服务数，0 表示不限制"),
    cluster: ClusterService = Depends(get_cluster),
):
    """最近 30 分钟（3 个 10 分钟桶）的多节点概览"""
    return await overview_snapshot(cluster, limit)


async def _wait_disconnect(websocket: WebSocket):
    """读取并丢弃客户端消息，直到连接断开"""
    with suppress(WebSocketDisconnect):
        while True:
            await websocket.receive_text()


async def _push_loop(websocket: WebSocket, cluster: ClusterService, limit: int):
    while True:
        snapshot = await overview_snapshot(cluster, limit)
        await asyncio.wait_for(
            websocket.send_text(snapshot.model_dump_json()),
            timeout=OVERVIEW_WRITE_TIMEOUT,
        )
        await asyncio.sleep(OVERVIEW_PUSH_INTERVAL)


@router.websocket("/ws")
async def overview_ws(
    websocket: WebSocket,
    limit: int = Query(DEFAULT_OVERVIEW_LIMIT, ge=0),
    cluster: ClusterService = Depends(get_ws_cluster),
):
    """
    概览推送

    客户端断开、写超时或推送出错时结束；两个子任务互相取消。
    """
    await websocket.accept()
    receiver = asyncio.create_task(_wait_disconnect(websocket))
    pusher = asyncio.create_task(_push_loop(websocket, cluster, limit))
    try:
        done, _ = await asyncio.wait({receiver, pusher}, return_when=asyncio.FIRST_COMPLETED)
        if pusher in done and not pusher.cancelled():
            error = pusher.exception()
            if isinstance(error, asyncio.TimeoutError):
                logger.warning("Overview websocket write timed out, closing")
            elif error is not None and not isinstance(error, WebSocketDisconnect):
                logger.error(f"Overview websocket push failed: {error}")
    finally:
        receiver.cancel()
        pusher.cancel()
        await asyncio.gather(receiver, pusher, return_exceptions=True)
    with suppress(RuntimeError):
        await websocket.close()
