"""
FastAPI 状态查询接口

只读展示 ForwardSupervisor 中各 port-forward 的状态。
uvicorn 跑在后台线程，主线程保留信号处理。
"""

import logging
import threading
import time
from typing import List, Optional

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException

from kube_forward import __version__
from kube_forward.models import ForwardStatusResponse, HealthResponse
from kube_forward.supervisor import ForwardSupervisor
from kube_forward.utils import error

logger = logging.getLogger(__name__)


def create_app(supervisor: ForwardSupervisor, token: Optional[str] = None) -> FastAPI:
    """
    创建 FastAPI 应用实例

    Args:
        supervisor: 被查询的 supervisor
        token: 设置后 /v1/forwards 需要 "Bearer <token>" 认证
    """
    app = FastAPI(
        title="kube-forward",
        version=__version__,
        description="kubectl port-forward 状态查询"
    )

    def verify_token(authorization: Optional[str] = Header(None)) -> bool:
        if token is None:
            return True

        if not authorization:
            raise HTTPException(status_code=401, detail="Missing authorization header")

        parts = authorization.split()
        if len(parts) != 2 or parts[0].lower() != "bearer":
            raise HTTPException(status_code=401, detail="Invalid authorization header format")

        if parts[1] != token:
            raise HTTPException(status_code=401, detail="Invalid token")

        return True

    @app.get("/v1/health", response_model=HealthResponse)
    async def get_health():
        """有任意 forward 未存活时返回 degraded"""
        statuses = supervisor.snapshot()
        running = sum(1 for s in statuses if s.alive)
        return HealthResponse(
            status="ok" if statuses and running == len(statuses) else "degraded",
            running=running,
            total=len(statuses),
        )

    @app.get("/v1/forwards", response_model=List[ForwardStatusResponse])
    async def list_forwards(authorized: bool = Depends(verify_token)):
        return supervisor.snapshot()

    return app


def serve_in_background(app: FastAPI, host: str, port: int, startup_timeout: float = 3.0) -> uvicorn.Server:
    """
    在守护线程中启动 uvicorn，返回 server（设置 should_exit 即可停止）

    最多等待 startup_timeout 秒确认监听成功；失败（如端口被占用）只输出错误，
    不影响 port-forward 本身。
    """
    server_config = uvicorn.Config(
        app=app,
        host=host,
        port=port,
        log_level="warning",
        access_log=False
    )
    server = uvicorn.Server(server_config)
    thread = threading.Thread(target=server.run, name="kube-forward-status", daemon=True)
    thread.start()

    deadline = time.monotonic() + startup_timeout
    while not server.started and thread.is_alive() and time.monotonic() < deadline:
        time.sleep(0.05)

    if not server.started:
        error(f"Status API failed to start on {host}:{port} (port in use?)")
        logger.error(f"uvicorn did not start on {host}:{port} within {startup_timeout}s")
        return server

    logger.info(f"Status API listening on http://{host}:{port}")
    return server
