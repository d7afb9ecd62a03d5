"""
数据模型定义

ForwardSpec 描述一条 port-forward（不可变），ForwardHandle 记录其运行状态，
其余为状态查询 API 的响应结构。
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ForwardState(str, Enum):
    """port-forward 生命周期状态"""
    STARTING = "starting"
    RUNNING = "running"
    FAILED = "failed"
    STOPPED = "stopped"


class ForwardSpec(BaseModel):
    """单条 port-forward 配置"""

    model_config = ConfigDict(frozen=True)

    label: str = Field(..., description="显示名称，如 prometheus")
    local_port: int = Field(..., ge=1, le=65535, description="本地监听端口")
    remote_service: str = Field(..., description="集群内 Service 名称")
    remote_port: int = Field(..., ge=1, le=65535, description="Service 端口")
    log_file: Path = Field(..., description="kubectl 输出日志文件（每次运行覆盖）")
    note: Optional[str] = Field(default=None, description="摘要中附加的说明")

    @field_validator("remote_service")
    @classmethod
    def _service_not_empty(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("remote_service must not be empty")
        return value

    @property
    def url(self) -> str:
        return f"http://localhost:{self.local_port}"

    @property
    def target(self) -> str:
        return f"{self.remote_service}:{self.remote_port}"


@dataclass
class ForwardHandle:
    """一条已启动的 port-forward，仅由 ForwardSupervisor 修改"""
    spec: ForwardSpec
    pid: Optional[int] = None
    state: ForwardState = ForwardState.STARTING
    returncode: Optional[int] = None


class ForwardStatusResponse(BaseModel):
    """port-forward 状态响应"""
    label: str
    local_port: int
    target: str
    url: str
    pid: Optional[int] = None
    state: ForwardState
    alive: bool = Field(..., description="进程当前是否存活")
    log_file: str


class HealthResponse(BaseModel):
    """健康检查响应"""
    status: str = Field(..., description="ok|degraded")
    running: int = Field(..., description="存活的 port-forward 数量")
    total: int = Field(..., description="本次运行的 port-forward 总数")
