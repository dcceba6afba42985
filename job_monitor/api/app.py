"""
FastAPI 应用配置

配置 CORS、路由注册，并把运行期状态挂到 app.state 上。
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .. import __version__
from ..cluster import ClusterService
from ..config import AppConfig
from ..models import Node
from ..storage import ConnectivityStorage, StatusStorage
from .routers import cluster, node, overview, status

logger = logging.getLogger(__name__)


@dataclass
class AppState:
    """API 处理请求所需的全部运行期对象"""
    config: AppConfig
    node: Node
    storage: StatusStorage
    cluster: ClusterService
    connectivity: Optional[ConnectivityStorage] = None


def create_app(state: AppState) -> FastAPI:
    """
    创建 FastAPI 应用实例

    配置：
    - CORS 中间件
    - API 路由
    """
    app = FastAPI(
        title="Job Monitor",
        description="服务可用性监控与多节点聚合",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json"
    )
    app.state.monitor = state

    app.add_middleware(
        CORSMiddleware,
        allow_origins=state.config.api.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(status.router)
    app.include_router(node.router)
    app.include_router(cluster.router)
    app.include_router(overview.router)

    logger.debug(f"API created for node {state.node.id}")
    return app
