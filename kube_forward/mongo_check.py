"""
MongoDB / mongo-express 排查

MongoAuthCheck: 从 mongodb-secret 读取 root 用户名/密码，拼出连接 URI，
再用临时 mongo 客户端 Pod 在集群内执行 ping。

MongoExpressCheck: mongo-express -> mongodb 连通性的一系列检查
（Pod 日志、环境变量、DNS、TCP、MongoDB 日志），
可选地写入 mongo-uri-secret 并重启 Deployment。
"""

import json
import logging
import os
import re
import shlex
from dataclasses import dataclass
from typing import Dict, List, Optional
from urllib.parse import quote

from kube_forward.errors import KubectlError, SecretNotFound
from kube_forward.kubectl import Kubectl
from kube_forward.utils import error, fail, info, success

logger = logging.getLogger(__name__)

USERNAME_KEY = "mongo-root-username"
PASSWORD_KEY = "mongo-root-password"

_CREDENTIALS_RE = re.compile(r"^(mongodb(?:\+srv)?://)[^@/]*@")


def build_mongo_uri(user: str, password: str, service: str, database: str = "admin") -> str:
    """拼接 mongodb:// URI（用户名、密码做 URL 编码）"""
    return f"mongodb://{quote(user, safe='')}:{quote(password, safe='')}@{service}/{database}"


def redact_uri(uri: str) -> str:
    """隐藏 URI 中的用户名和密码"""
    return _CREDENTIALS_RE.sub(r"\1<user>:<password>@", uri)


def ping_script(uri: str) -> str:
    """Pod 内执行的 bash 脚本"""
    return (
        "set -euo pipefail\n"
        "echo '[pod] Running mongo client ping...'\n"
        f"mongo {shlex.quote(uri)} --eval 'printjson(db.adminCommand({{ping:1}}))' --quiet\n"
    )


@dataclass
class MongoAuthCheck:
    kubectl: Kubectl
    secret_name: str = "mongodb-secret"
    service: str = "mongodb-service:27017"
    image: str = "mongo:4.4"
    pod_name: Optional[str] = None

    def __post_init__(self):
        if self.pod_name is None:
            self.pod_name = f"mongo-client-test-{os.getpid()}"

    async def run(self) -> int:
        """
        执行检查

        Returns:
            临时 Pod 的退出码（0 表示 ping 成功）

        Raises:
            SecretNotFound: Secret 不存在或缺少用户名/密码
        """
        info(f"Namespace: {self.kubectl.namespace}")
        info(f"Reading secret: {self.secret_name}")

        creds = await self.kubectl.read_secret(self.secret_name, [USERNAME_KEY, PASSWORD_KEY])
        user = creds[USERNAME_KEY]
        uri = build_mongo_uri(user, creds[PASSWORD_KEY], self.service)

        info(f"Using user='{user}' (password hidden)")
        info(f"Built URI: {redact_uri(uri)}")
        info("Running transient pod to test auth (will be auto-removed)...")

        rc = await self.kubectl.attach(
            "run",
            self.pod_name,
            f"--image={self.image}",
            "--restart=Never",
            "--attach",
            "--rm",
            "-i",
            "--",
            "bash",
            "-c",
            ping_script(uri),
        )

        if rc == 0:
            success("In-cluster authenticated ping worked.")
        else:
            fail(f"In-cluster ping failed (exit code: {rc}). See above output for details.")
        logger.debug(f"mongo auth check finished (rc={rc})")
        return rc


URI_SECRET_NAME = "mongo-uri-secret"
URI_SECRET_KEY = "ME_CONFIG_MONGODB_URL"

ENV_SCRIPT = 'env | grep -i "ME_CONFIG\\|MONGO\\|MONGODB" || true'

# 在 Deployment 第一个容器的 env 末尾追加 ME_CONFIG_MONGODB_URL（来自 mongo-uri-secret）
URI_ENV_PATCH = [
    {
        "op": "add",
        "path": "/spec/template/spec/containers/0/env/-",
        "value": {
            "name": URI_SECRET_KEY,
            "valueFrom": {"secretKeyRef": {"name": URI_SECRET_NAME, "key": URI_SECRET_KEY}},
        },
    }
]


@dataclass
class MongoExpressCheck:
    kubectl: Kubectl
    deployment: str = "mongo-express"
    app_label: str = "app=mongo-express"
    db_label: str = "app=mongodb"
    db_service: str = "mongodb-service"
    db_port: int = 27017
    secret_name: str = "mongodb-secret"
    image: str = "mongo:4.4"
    apply_uri: bool = False
    restart: bool = False

    @property
    def db_address(self) -> str:
        return f"{self.db_service}:{self.db_port}"

    async def list_app_pods(self) -> List[str]:
        """mongo-express Pod 名称列表（第一个视为 NEW，第二个视为 OLD）"""
        try:
            out = await self.kubectl.run(
                "get", "pod", "-l", self.app_label,
                "-o", 'jsonpath={range .items[*]}{.metadata.name}{"\\n"}{end}',
            )
        except KubectlError as e:
            logger.debug(f"list pods failed: {e}")
            return []
        return out.split()

    async def find_db_pod(self) -> Optional[str]:
        try:
            out = await self.kubectl.run(
                "get", "pod", "-l", self.db_label, "-o", "jsonpath={.items[0].metadata.name}"
            )
        except KubectlError as e:
            logger.debug(f"find mongodb pod failed: {e}")
            return None
        return out.strip() or None

    async def has_bash(self, pod: str) -> bool:
        try:
            await self.kubectl.run("exec", pod, "--", "/bin/bash", "-c", "echo ok")
        except KubectlError:
            return False
        return True

    async def tcp_test(self, pod: str):
        """优先在 Pod 内用 bash /dev/tcp 测试；没有 bash 时起临时调试 Pod"""
        host, port = self.db_service, self.db_port
        if await self.has_bash(pod):
            await self.kubectl.attach(
                "exec", pod, "--", "/bin/bash", "-c",
                f"if (echo > /dev/tcp/{host}/{port}) 2>/dev/null; "
                f"then echo 'TCP OK to {host}:{port}'; else echo 'TCP FAILED to {host}:{port}'; fi",
            )
            return

        info(f"Pod {pod} has no /bin/bash; launching ephemeral debug pod for TCP test")
        await self.kubectl.attach(
            "run", "--rm", "--restart=Never", "debug-tcp", "--image=infoblox/dnstools",
            "--", "nslookup", host,
        )
        await self.kubectl.attach(
            "run", "--rm", "--restart=Never", "tcp-test", "--image=busybox",
            "--", "/bin/sh", "-c",
            f"if nc -z -w 3 {host} {port}; then echo 'TCP OK'; else echo 'TCP FAILED'; fi",
        )

    async def read_credentials(self) -> Optional[Dict[str, str]]:
        try:
            return await self.kubectl.read_secret(self.secret_name, [USERNAME_KEY, PASSWORD_KEY])
        except SecretNotFound:
            error(
                f"Could not read {self.secret_name} ({USERNAME_KEY} / {PASSWORD_KEY}). "
                f"Ensure the secret exists in namespace {self.kubectl.namespace}."
            )
            return None

    async def client_ping(self, creds: Dict[str, str]):
        uri = build_mongo_uri(creds[USERNAME_KEY], creds[PASSWORD_KEY], self.db_address)
        await self.kubectl.attach(
            "run", "--rm", "--restart=Never", "mongo-client", f"--image={self.image}",
            "--", "bash", "-c",
            f"mongo {shlex.quote(uri)} --eval 'db.adminCommand({{ping:1}})' || echo 'mongo client test failed'",
        )

    async def apply_uri_secret(self, creds: Optional[Dict[str, str]]):
        """创建/更新 mongo-uri-secret，并给 Deployment 加上对应的环境变量"""
        info(f"Creating/updating secret '{URI_SECRET_NAME}' with {URI_SECRET_KEY} from {self.secret_name}...")
        if not creds:
            error("Cannot build URI: username/password missing")
            return

        uri = build_mongo_uri(creds[USERNAME_KEY], creds[PASSWORD_KEY], self.db_address)
        try:
            manifest = await self.kubectl.run(
                "create", "secret", "generic", URI_SECRET_NAME,
                f"--from-literal={URI_SECRET_KEY}={uri}",
                "--dry-run=client", "-o", "yaml",
            )
            await self.kubectl.run("apply", "-f", "-", input=manifest)
        except KubectlError as e:
            error(f"Failed to apply {URI_SECRET_NAME}: {e.stderr.strip() or e.returncode}")
            return

        info(f"Patching deployment to add {URI_SECRET_KEY} from secret (valueFrom.secretKeyRef)...")
        try:
            await self.kubectl.run(
                "patch", "deployment", self.deployment, "--type=json", "-p", json.dumps(URI_ENV_PATCH)
            )
        except KubectlError:
            info("Patch may have failed (maybe env already exists) - you can patch manually if needed.")

    async def restart_rollout(self):
        info(f"Restarting rollout for deployment {self.deployment} ...")
        rc = await self.kubectl.attach("rollout", "restart", f"deployment/{self.deployment}")
        if rc != 0:
            error("rollout restart failed")
        await self.kubectl.attach("rollout", "status", f"deployment/{self.deployment}", "--watch")

    async def run(self) -> int:
        """
        执行全部检查

        单步失败只输出提示，继续后续检查。

        Returns:
            0 检查完成；1 找不到 mongo-express Pod
        """
        ns = self.kubectl.namespace
        info(f"Using namespace: {ns}")
        info("Checking pods for mongo-express and mongodb...")
        await self.kubectl.attach("get", "pods", "-l", self.app_label, "-o", "wide")

        pods = await self.list_app_pods()
        if not pods:
            error(f"No pods found with label {self.app_label} in namespace {ns}")
            return 1

        new_pod = pods[0]
        old_pod = pods[1] if len(pods) > 1 else None
        info(f"NEW POD: {new_pod}")
        if old_pod:
            info(f"OLD POD: {old_pod}")

        info(f"----- logs for NEW POD ({new_pod}) -----")
        await self.kubectl.attach("logs", new_pod, "--tail=200")
        if old_pod:
            info(f"----- logs for OLD POD ({old_pod}) -----")
            await self.kubectl.attach("logs", old_pod, "--tail=200")

        info("----- env in NEW POD -----")
        await self.kubectl.attach("exec", new_pod, "--", "/bin/sh", "-c", ENV_SCRIPT)

        info("----- DNS resolution from NEW POD -----")
        await self.kubectl.attach(
            "exec", new_pod, "--", "/bin/sh", "-c",
            f"cat /etc/resolv.conf; nslookup {self.db_service} || true; getent hosts {self.db_service} || true",
        )

        info(f"----- TCP test to {self.db_address} from NEW POD (using bash if available) -----")
        await self.tcp_test(new_pod)

        db_pod = await self.find_db_pod()
        if db_pod:
            info(f"MongoDB pod: {db_pod}")
            await self.kubectl.attach("logs", db_pod, "--tail=50")
        else:
            error(f"No MongoDB pod found with label {self.db_label}")

        info("----- test with in-cluster mongo client (ping) -----")
        creds = await self.read_credentials()
        if creds:
            await self.client_ping(creds)

        if self.apply_uri:
            await self.apply_uri_secret(creds)
        if self.restart:
            await self.restart_rollout()

        info("All checks completed. If mongo-express still shows 'Waiting for mongo', "
             "compare the NEW pod logs with the outputs above.")
        return 0
