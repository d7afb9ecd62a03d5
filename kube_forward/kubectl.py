"""
kubectl 调用封装

一次性的 kubectl 调用（get / run 等）与 Secret 字段读取。
KUBECONFIG 通过环境变量传给子进程（可以是冒号分隔的多个文件）。
"""

import asyncio
import base64
import binascii
import logging
import os
import shutil
from typing import Dict, List, Optional, Sequence

from kube_forward.errors import KubectlError, SecretNotFound

logger = logging.getLogger(__name__)


def jsonpath_key(key: str) -> str:
    """转义 jsonpath 中的点号，如 tls.crt -> tls\\.crt"""
    return key.replace(".", "\\.")


class Kubectl:
    def __init__(self, namespace: str = "default", binary: str = "kubectl", kubeconfig: Optional[str] = None):
        self.namespace = namespace
        self.binary = binary
        self.kubeconfig = kubeconfig

    def command(self, *args: str) -> List[str]:
        """
        构造完整命令行

        Raises:
            FileNotFoundError: 找不到 kubectl
        """
        path = shutil.which(self.binary)
        if not path:
            raise FileNotFoundError(f"kubectl not found in PATH: {self.binary}")
        return [path, "-n", self.namespace, *args]

    def env(self) -> Optional[Dict[str, str]]:
        if not self.kubeconfig:
            return None
        return {**os.environ, "KUBECONFIG": self.kubeconfig}

    async def run(self, *args: str, input: Optional[str] = None) -> str:
        """
        执行 kubectl 并返回 stdout

        Args:
            input: 写入 stdin 的内容（如 apply -f -）

        Raises:
            KubectlError: 返回码非 0
        """
        cmd = self.command(*args)
        logger.debug(f"exec: {' '.join(cmd)}")

        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE if input is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self.env(),
        )
        stdout, stderr = await proc.communicate(input.encode() if input is not None else None)

        if proc.returncode != 0:
            raise KubectlError(args, proc.returncode, stderr.decode(errors="replace"))
        return stdout.decode(errors="replace")

    async def attach(self, *args: str) -> int:
        """执行 kubectl 并继承当前终端的输入输出，返回退出码"""
        cmd = self.command(*args)
        logger.debug(f"exec (attached): {' '.join(cmd)}")
        proc = await asyncio.create_subprocess_exec(*cmd, env=self.env())
        return await proc.wait()

    async def read_secret_field(self, name: str, key: str) -> Optional[str]:
        """
        读取 Secret 的单个字段并 base64 解码

        Returns:
            解码后的字符串；Secret 不存在或字段为空时返回 None
        """
        try:
            encoded = await self.run(
                "get", "secret", name, "-o", f"jsonpath={{.data.{jsonpath_key(key)}}}"
            )
        except KubectlError as e:
            logger.debug(f"secret {name}/{key}: {e}")
            return None

        encoded = encoded.strip()
        if not encoded:
            return None
        try:
            return base64.b64decode(encoded, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            logger.warning(f"secret {name}/{key} is not valid base64 text: {e}")
            return None

    async def read_secret(self, name: str, keys: Sequence[str]) -> Dict[str, str]:
        """
        读取 Secret 的多个字段

        Raises:
            SecretNotFound: 任一字段缺失
        """
        values = await asyncio.gather(*(self.read_secret_field(name, key) for key in keys))
        missing = [key for key, value in zip(keys, values) if not value]
        if missing:
            raise SecretNotFound(name, missing)
        return dict(zip(keys, values))
