"""
命令行入口

    kube-forward forward      启动全部 port-forward，Ctrl-C 停止
    kube-forward secret       读取并解码 Secret 字段
    kube-forward mongo-auth   在集群内验证 MongoDB 认证
    kube-forward mongo-check  排查 mongo-express 到 MongoDB 的连接
"""

import asyncio
import logging
import sys
from pathlib import Path
from typing import List, Optional

import typer
import yaml
from pydantic import ValidationError

from kube_forward.config import load_config
from kube_forward.errors import KubectlError, SecretNotFound, StartupFailure
from kube_forward.kubectl import Kubectl
from kube_forward.mongo_check import MongoAuthCheck, MongoExpressCheck
from kube_forward.supervisor import ForwardSupervisor
from kube_forward.utils import error

app = typer.Typer(help="Kubernetes port-forward and debugging helpers", no_args_is_help=True)


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    """配置日志"""
    log_format = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=log_format,
        handlers=[logging.StreamHandler(sys.stdout)],
        force=True,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(str(log_path), encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(log_format))
        logging.getLogger().addHandler(file_handler)

    # 降低第三方库日志级别
    logging.getLogger("uvicorn").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)


@app.command()
def forward(
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="YAML config (default: env vars)"),
    status_port: Optional[int] = typer.Option(None, "--status-port", help="Serve the status API on this port"),
    status_host: str = typer.Option("127.0.0.1", "--status-host", help="Status API bind address"),
    status_token: Optional[str] = typer.Option(
        None, "--status-token", envvar="KUBE_FORWARD_TOKEN", help="Bearer token for /v1/forwards"
    ),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override LOG_LEVEL"),
    log_file: Optional[str] = typer.Option(None, "--log-file", help="Also write diagnostics to this file"),
):
    """Start all configured port-forwards and keep them running until Ctrl-C."""
    try:
        cfg = load_config(str(config) if config else None)
    except (FileNotFoundError, ValueError, ValidationError, yaml.YAMLError) as e:
        error(f"Invalid configuration: {e}")
        raise typer.Exit(code=1)

    setup_logging(log_level or cfg.log_level, log_file)
    logger = logging.getLogger(__name__)
    logger.debug(f"namespace={cfg.namespace}, {len(cfg.forwards)} forwards")

    supervisor = ForwardSupervisor.from_config(cfg)

    server = None
    if status_port:
        from kube_forward.app import create_app, serve_in_background

        server = serve_in_background(create_app(supervisor, status_token), status_host, status_port)

    try:
        asyncio.run(supervisor.run(cfg.forwards))
    except StartupFailure as e:
        error(str(e))
        raise typer.Exit(code=1)
    except FileNotFoundError as e:
        error(str(e))
        raise typer.Exit(code=2)
    except KeyboardInterrupt:
        # 信号处理器安装前收到 Ctrl-C；run() 的 finally 已完成清理
        pass
    finally:
        if server is not None:
            server.should_exit = True


@app.command()
def secret(
    name: str = typer.Argument(..., help="Secret name"),
    keys: List[str] = typer.Argument(..., help="Data keys to decode"),
    namespace: str = typer.Option("default", "--namespace", "-n"),
    kubectl: str = typer.Option("kubectl", "--kubectl", envvar="KUBECTL", help="kubectl binary"),
    kubeconfig: Optional[str] = typer.Option(None, "--kubeconfig", envvar="KUBECONFIG"),
):
    """Print base64-decoded fields of a Kubernetes Secret."""
    client = Kubectl(namespace=namespace, binary=kubectl, kubeconfig=kubeconfig)
    try:
        values = asyncio.run(client.read_secret(name, keys))
    except SecretNotFound as e:
        error(str(e))
        error(f"Run: kubectl get secret {name} -n {namespace} -o yaml")
        raise typer.Exit(code=2)
    except FileNotFoundError as e:
        error(str(e))
        raise typer.Exit(code=2)

    for key in keys:
        typer.echo(f"{key}={values[key]}")


@app.command("mongo-auth")
def mongo_auth(
    namespace: str = typer.Option("default", "--namespace", "-n"),
    secret_name: str = typer.Option("mongodb-secret", "--secret", help="Secret holding the root credentials"),
    service: str = typer.Option("mongodb-service:27017", "--service", help="MongoDB service host:port"),
    image: str = typer.Option("mongo:4.4", "--image", help="Client image for the test pod"),
    kubectl: str = typer.Option("kubectl", "--kubectl", envvar="KUBECTL", help="kubectl binary"),
    kubeconfig: Optional[str] = typer.Option(None, "--kubeconfig", envvar="KUBECONFIG"),
):
    """Ping MongoDB from a transient in-cluster client pod using the root credentials."""
    client = Kubectl(namespace=namespace, binary=kubectl, kubeconfig=kubeconfig)
    check = MongoAuthCheck(kubectl=client, secret_name=secret_name, service=service, image=image)
    try:
        rc = asyncio.run(check.run())
    except SecretNotFound as e:
        error(str(e))
        error(f"Run: kubectl get secret {secret_name} -n {namespace} -o yaml")
        raise typer.Exit(code=2)
    except (FileNotFoundError, KubectlError) as e:
        error(str(e))
        raise typer.Exit(code=2)

    raise typer.Exit(code=rc)


@app.command("mongo-check")
def mongo_check(
    namespace: str = typer.Option("default", "--namespace", "-n"),
    deployment: str = typer.Option("mongo-express", "--deployment", help="mongo-express deployment name"),
    app_label: str = typer.Option("app=mongo-express", "--label", help="Label selector of the mongo-express pods"),
    db_label: str = typer.Option("app=mongodb", "--db-label", help="Label selector of the MongoDB pods"),
    db_service: str = typer.Option("mongodb-service", "--db-service", help="MongoDB service name"),
    db_port: int = typer.Option(27017, "--db-port"),
    secret_name: str = typer.Option("mongodb-secret", "--secret", help="Secret holding the root credentials"),
    image: str = typer.Option("mongo:4.4", "--image", help="Client image for the ping pod"),
    apply_uri: bool = typer.Option(False, "--apply-uri", help="Create mongo-uri-secret and patch the deployment"),
    restart: bool = typer.Option(False, "--restart", help="Restart the deployment and wait for the rollout"),
    kubectl: str = typer.Option("kubectl", "--kubectl", envvar="KUBECTL", help="kubectl binary"),
    kubeconfig: Optional[str] = typer.Option(None, "--kubeconfig", envvar="KUBECONFIG"),
):
    """Diagnose mongo-express -> MongoDB connectivity (logs, env, DNS, TCP, ping)."""
    client = Kubectl(namespace=namespace, binary=kubectl, kubeconfig=kubeconfig)
    check = MongoExpressCheck(
        kubectl=client,
        deployment=deployment,
        app_label=app_label,
        db_label=db_label,
        db_service=db_service,
        db_port=db_port,
        secret_name=secret_name,
        image=image,
        apply_uri=apply_uri,
        restart=restart,
    )
    try:
        rc = asyncio.run(check.run())
    except FileNotFoundError as e:
        error(str(e))
        raise typer.Exit(code=2)

    raise typer.Exit(code=rc)
