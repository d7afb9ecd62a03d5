"""
测试公共 fixture

fake_kubectl 生成一个可执行的假 kubectl 脚本，行为由同目录的 fake-kubectl.json 控制；
每次调用都追加一行 JSON 到 calls.jsonl（参数、KUBECONFIG、apply 的 stdin）：
- port-forward: 打印 "Forwarding from ..." 后一直运行；failing 中的 service 立即以 1 退出；
  ignore_term 时忽略 SIGTERM
- get secret: 从 secrets 字典中返回 base64 编码后的字段（jsonpath 中的 \\. 视为键名里的点号）
- get pod(s): pods 字典 {label: [name, ...]}
- exec: bash 为 False 时 /bin/bash 不存在（退出码 126）
- run: 把参数写入 run-args.txt，以 run_rc 退出
- create / apply / patch / logs / rollout: 打印固定输出
"""

import json
import os
import stat
import sys
from pathlib import Path

import pytest

# 添加项目路径到 sys.path
sys.path.insert(0, str(Path(__file__).parent.parent))

FAKE_KUBECTL = r'''
import base64
import json
import os
import re
import signal
import sys
import time

HERE = os.path.dirname(os.path.abspath(__file__))
with open(os.path.join(HERE, "fake-kubectl.json")) as f:
    CONFIG = json.load(f)

args = sys.argv[1:]
record = {"args": args, "kubeconfig": os.environ.get("KUBECONFIG")}
if "apply" in args:
    record["stdin"] = sys.stdin.read()
with open(os.path.join(HERE, "calls.jsonl"), "a") as f:
    f.write(json.dumps(record) + "\n")

if args[:1] == ["-n"]:
    args = args[2:]
verb = args[0] if args else ""


def option(name):
    return args[args.index(name) + 1] if name in args else None


def pods_for(label):
    return CONFIG["pods"].get(label, [])


if verb == "port-forward":
    if CONFIG["ignore_term"]:
        signal.signal(signal.SIGTERM, signal.SIG_IGN)
    service = args[1][len("svc/"):]
    local, remote = args[2].split(":")
    if service in CONFIG["failing"]:
        print('error: services "%s" not found' % service, flush=True)
        sys.exit(1)
    print("Forwarding from 127.0.0.1:%s -> %s" % (local, remote), flush=True)
    while True:
        time.sleep(1)

elif verb == "get" and args[1] == "secret":
    name = args[2]
    path = option("-o")[len("jsonpath={.data."):-1]
    data = CONFIG["secrets"].get(name)
    if data is None:
        sys.stderr.write('Error from server (NotFound): secrets "%s" not found\n' % name)
        sys.exit(1)
    # 未转义的点号是嵌套路径，data 下没有嵌套对象，输出为空
    if len(re.split(r"(?<!\\)\.", path)) == 1:
        value = data.get(path.replace("\\.", "."))
        if value is not None:
            sys.stdout.write(base64.b64encode(value.encode()).decode())

elif verb == "get" and args[1] in ("pod", "pods"):
    names = pods_for(option("-l"))
    output = option("-o")
    if output == "wide":
        print("NAME  READY  STATUS  RESTARTS  AGE  IP  NODE")
        for name in names:
            print("%s  1/1  Running  0  1m  10.0.0.1  node-1" % name)
    elif "range" in output:
        for name in names:
            print(name)
    else:
        if not names:
            sys.stderr.write("error: error executing jsonpath: array index out of bounds\n")
            sys.exit(1)
        sys.stdout.write(names[0])

elif verb == "logs":
    print("log line from %s" % args[1])

elif verb == "exec":
    if "/bin/bash" in args and not CONFIG["bash"]:
        sys.stderr.write('exec: "/bin/bash": stat /bin/bash: no such file or directory\n')
        sys.exit(126)
    print("exec ok in %s" % args[1])

elif verb == "run":
    with open(os.path.join(HERE, "run-args.txt"), "w") as f:
        f.write("\n".join(sys.argv[1:]))
    sys.exit(CONFIG["run_rc"])

elif verb == "create":
    literal = next(a for a in args if a.startswith("--from-literal="))
    key, value = literal[len("--from-literal="):].split("=", 1)
    print("apiVersion: v1")
    print("kind: Secret")
    print("metadata:")
    print("  name: %s" % args[3])
    print("data:")
    print("  %s: %s" % (key, base64.b64encode(value.encode()).decode()))

elif verb == "apply":
    print("secret/mongo-uri-secret configured")

elif verb == "patch":
    if CONFIG["patch_rc"]:
        sys.stderr.write("The request is invalid\n")
        sys.exit(CONFIG["patch_rc"])
    print("deployment.apps/%s patched" % args[2])

elif verb == "rollout":
    print("rollout %s %s" % (args[1], args[2]))

else:
    sys.stderr.write("unsupported: %s\n" % " ".join(args))
    sys.exit(64)
'''


def read_calls(directory: Path):
    """读取假 kubectl 的调用记录，每条去掉开头的 -n <namespace>"""
    path = directory / "calls.jsonl"
    if not path.exists():
        return []
    calls = []
    for line in path.read_text().splitlines():
        call = json.loads(line)
        if call["args"][:1] == ["-n"]:
            call["args"] = call["args"][2:]
        calls.append(call)
    return calls


@pytest.fixture
def fake_kubectl(tmp_path):
    """返回一个工厂函数，生成假 kubectl 并返回其路径"""

    def _make(secrets=None, failing=(), run_rc=0, pods=None, bash=True, patch_rc=0, ignore_term=False) -> Path:
        (tmp_path / "fake-kubectl.json").write_text(json.dumps({
            "secrets": secrets or {},
            "failing": list(failing),
            "run_rc": run_rc,
            "pods": pods or {},
            "bash": bash,
            "patch_rc": patch_rc,
            "ignore_term": ignore_term,
        }))
        path = tmp_path / "kubectl"
        path.write_text(f"#!{sys.executable}" + FAKE_KUBECTL)
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _make


@pytest.fixture
def kubectl_calls(tmp_path):
    """返回一个函数，读取当前测试中假 kubectl 的调用记录"""
    return lambda: read_calls(tmp_path)


@pytest.fixture
def clean_env(monkeypatch):
    """清除会影响配置加载的环境变量"""
    for name in (
        "KUBE_FORWARD_CONFIG", "KUBECONFIG", "NAMESPACE", "PROM_SVC", "GRAF_SVC", "AM_SVC",
        "PROM_LOCAL_PORT", "GRAF_LOCAL_PORT", "AM_LOCAL_PORT", "KUBECTL", "LOG_DIR",
        "LIVENESS_WINDOW", "STOP_TIMEOUT", "LOG_LEVEL",
    ):
        monkeypatch.delenv(name, raising=False)
    return os.environ
