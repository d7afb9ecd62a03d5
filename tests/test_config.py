"""
测试配置加载
"""

from pathlib import Path

import pytest
from pydantic import ValidationError

from kube_forward.config import ForwardSettings, SupervisorConfig, default_forwards, load_config
from kube_forward.models import ForwardSpec


def test_env_defaults(clean_env, tmp_path, monkeypatch):
    monkeypatch.setenv("LOG_DIR", str(tmp_path))

    config = load_config()

    assert config.namespace == "monitoring-observability"
    assert config.kubeconfig is None
    assert config.liveness_window == 0.4
    assert [f.label for f in config.forwards] == ["prometheus", "grafana", "alertmgr"]
    assert [f.local_port for f in config.forwards] == [9090, 18080, 9093]
    assert [f.target for f in config.forwards] == [
        "monitoring-prometheus:9090",
        "monitoring-grafana:80",
        "monitoring-alertmanager:9093",
    ]
    assert config.forwards[0].log_file == tmp_path / "portfwd-prom.log"
    assert config.forwards[1].note == "user: admin / pass: prom-operator"


def test_env_overrides(clean_env, monkeypatch):
    monkeypatch.setenv("NAMESPACE", "obs")
    monkeypatch.setenv("KUBECONFIG", "/home/me/.kube/config_lab")
    monkeypatch.setenv("GRAF_SVC", "grafana")
    monkeypatch.setenv("GRAF_LOCAL_PORT", "3000")

    config = load_config()

    assert config.namespace == "obs"
    assert config.kubeconfig == "/home/me/.kube/config_lab"
    grafana = config.forwards[1]
    assert grafana.local_port == 3000
    assert grafana.remote_service == "grafana"
    assert grafana.url == "http://localhost:3000"


def test_yaml_config(clean_env, tmp_path):
    config_file = tmp_path / "forwards.yaml"
    config_file.write_text(
        "namespace: default\n"
        f"log_dir: {tmp_path / 'logs'}\n"
        "forwards:\n"
        "  - label: mongo-express\n"
        "    local_port: 8081\n"
        "    remote_service: mongo-express-service\n"
        "    remote_port: 8081\n"
        "    log_file: portfwd-me.log\n"
        "  - label: mongodb\n"
        "    local_port: 27017\n"
        "    remote_service: mongodb-service\n"
        "    remote_port: 27017\n"
        "    log_file: /var/tmp/portfwd-mongo.log\n"
    )

    config = load_config(str(config_file))

    assert config.namespace == "default"
    assert [f.label for f in config.forwards] == ["mongo-express", "mongodb"]
    assert config.forwards[0].log_file == tmp_path / "logs" / "portfwd-me.log"
    assert config.forwards[1].log_file == Path("/var/tmp/portfwd-mongo.log")


def test_yaml_without_forwards_uses_defaults(clean_env, tmp_path):
    config_file = tmp_path / "forwards.yaml"
    config_file.write_text(f"namespace: lab\nlog_dir: {tmp_path}\n")

    config = load_config(str(config_file))

    assert config.namespace == "lab"
    assert len(config.forwards) == 3
    assert config.forwards[2].log_file == tmp_path / "portfwd-am.log"


def test_config_path_from_env(clean_env, tmp_path, monkeypatch):
    config_file = tmp_path / "forwards.yaml"
    config_file.write_text("namespace: from-env-file\n")
    monkeypatch.setenv("KUBE_FORWARD_CONFIG", str(config_file))

    assert load_config().namespace == "from-env-file"


def test_missing_config_file(clean_env, tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "nope.yaml"))


def test_duplicate_local_port_rejected(clean_env, tmp_path):
    forwards = default_forwards(ForwardSettings(log_dir=tmp_path, graf_local_port=9090))

    with pytest.raises(ValidationError, match="local port 9090"):
        SupervisorConfig(forwards=forwards)


def test_forward_spec_validation(tmp_path):
    with pytest.raises(ValidationError):
        ForwardSpec(label="x", local_port=9090, remote_service="  ", remote_port=80, log_file=tmp_path / "x.log")
    with pytest.raises(ValidationError):
        ForwardSpec(label="x", local_port=0, remote_service="svc", remote_port=80, log_file=tmp_path / "x.log")
    with pytest.raises(ValidationError):
        ForwardSpec(label="x", local_port=9090, remote_service="svc", remote_port=-1, log_file=tmp_path / "x.log")


def test_forward_spec_is_immutable(tmp_path):
    spec = ForwardSpec(label="x", local_port=9090, remote_service="svc", remote_port=80, log_file=tmp_path / "x.log")

    with pytest.raises(ValidationError):
        spec.local_port = 9091
