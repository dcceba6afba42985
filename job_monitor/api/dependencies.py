"""
依赖注入模块

提供 FastAPI 依赖项。
"""

import secrets
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, WebSocket, status

from ..cluster import ClusterService


def get_state(request: Request):
    """获取当前应用的 AppState"""
    return request.app.state.monitor


def get_cluster(request: Request) -> ClusterService:
    return request.app.state.monitor.cluster


def get_ws_cluster(websocket: WebSocket) -> ClusterService:
    return websocket.app.state.monitor.cluster


async def verify_node_token(
    authorization: Optional[str] = Header(None),
    state=Depends(get_state),
):
    """
    验证节点间 Bearer Token

    未配置 node_token 时跳过验证。
    """
    expected_token = state.config.api.node_token
    if not expected_token:
        return

    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(token.strip(), expected_token):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid node token",
            headers={"WWW-Authenticate": "Bearer"},
        )
