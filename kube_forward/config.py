"""
配置管理模块

默认从环境变量读取（与 forward-all.sh 的变量名一致），
也可从 YAML 文件加载完整的 forward 列表。
"""

import os
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from kube_forward.models import ForwardSpec


class ForwardSettings(BaseSettings):
    """环境变量配置（无前缀）"""

    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")

    kubeconfig: Optional[str] = None
    namespace: str = "monitoring-observability"
    prom_svc: str = "monitoring-prometheus"
    graf_svc: str = "monitoring-grafana"
    am_svc: str = "monitoring-alertmanager"
    prom_local_port: int = 9090
    graf_local_port: int = 18080
    am_local_port: int = 9093
    kubectl: str = "kubectl"
    log_dir: Path = Path("/tmp")
    liveness_window: float = 0.4
    stop_timeout: float = 5.0
    log_level: str = "INFO"


class SupervisorConfig(BaseModel):
    """Supervisor 完整配置"""

    namespace: str = Field(default="monitoring-observability", description="目标命名空间")
    kubeconfig: Optional[str] = Field(default=None, description="kubeconfig 路径")
    kubectl: str = Field(default="kubectl", description="kubectl 可执行文件")
    log_dir: Path = Field(default=Path("/tmp"), description="相对日志路径的基准目录")
    log_level: str = Field(default="INFO", description="日志级别")
    liveness_window: float = Field(default=0.4, gt=0, description="启动后存活检查窗口（秒）")
    poll_interval: float = Field(default=0.05, gt=0, description="存活检查轮询间隔（秒）")
    stop_timeout: float = Field(default=5.0, gt=0, description="SIGTERM 后等待退出的时间（秒）")
    forwards: List[ForwardSpec] = Field(default_factory=list, description="port-forward 列表")

    @model_validator(mode="after")
    def _check_forwards(self):
        seen = {}
        resolved = []
        for spec in self.forwards:
            if spec.local_port in seen:
                raise ValueError(
                    f"local port {spec.local_port} claimed by both "
                    f"'{seen[spec.local_port]}' and '{spec.label}'"
                )
            seen[spec.local_port] = spec.label
            if not spec.log_file.is_absolute():
                spec = spec.model_copy(update={"log_file": self.log_dir / spec.log_file})
            resolved.append(spec)
        self.forwards = resolved
        return self


def default_forwards(settings: ForwardSettings) -> List[ForwardSpec]:
    """prometheus / grafana / alertmanager 三条默认 forward"""
    return [
        ForwardSpec(
            label="prometheus",
            local_port=settings.prom_local_port,
            remote_service=settings.prom_svc,
            remote_port=9090,
            log_file=settings.log_dir / "portfwd-prom.log",
        ),
        ForwardSpec(
            label="grafana",
            local_port=settings.graf_local_port,
            remote_service=settings.graf_svc,
            remote_port=80,
            log_file=settings.log_dir / "portfwd-grafana.log",
            note="user: admin / pass: prom-operator",
        ),
        ForwardSpec(
            label="alertmgr",
            local_port=settings.am_local_port,
            remote_service=settings.am_svc,
            remote_port=9093,
            log_file=settings.log_dir / "portfwd-am.log",
        ),
    ]


def load_config(config_path: Optional[str] = None) -> SupervisorConfig:
    """
    加载配置

    优先级：
    1. 参数指定的 YAML 路径
    2. 环境变量 KUBE_FORWARD_CONFIG
    3. 仅使用环境变量及默认值

    YAML 中未出现的字段取环境变量的值；未给出 forwards 时使用默认三条。

    Raises:
        FileNotFoundError: 指定的配置文件不存在
    """
    if config_path is None:
        config_path = os.getenv("KUBE_FORWARD_CONFIG")

    settings = ForwardSettings()
    data = {
        "namespace": settings.namespace,
        "kubeconfig": settings.kubeconfig,
        "kubectl": settings.kubectl,
        "log_dir": settings.log_dir,
        "log_level": settings.log_level,
        "liveness_window": settings.liveness_window,
        "stop_timeout": settings.stop_timeout,
    }

    if config_path:
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with open(config_file, "r", encoding="utf-8") as f:
            raw_config = yaml.safe_load(f) or {}
        if not isinstance(raw_config, dict):
            raise ValueError(f"Config file must contain a mapping: {config_path}")
        data.update(raw_config)

    if not data.get("forwards"):
        # log_dir 可能被 YAML 覆盖
        settings = settings.model_copy(update={"log_dir": Path(data["log_dir"])})
        data["forwards"] = default_forwards(settings)

    return SupervisorConfig(**data)
