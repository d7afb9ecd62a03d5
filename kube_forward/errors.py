"""
异常定义
"""

from typing import List, Optional, Sequence


class KubeForwardError(Exception):
    """kube-forward 异常基类"""


class StartupFailure(KubeForwardError):
    """port-forward 子进程在存活检查窗口内退出"""

    def __init__(self, label: str, returncode: Optional[int], log_tail: Optional[List[str]] = None):
        self.label = label
        self.returncode = returncode
        self.log_tail = log_tail or []
        super().__init__(f"port-forward '{label}' exited during startup (rc={returncode})")


class KubectlError(KubeForwardError):
    """kubectl 调用返回非 0"""

    def __init__(self, args: Sequence[str], returncode: int, stderr: str = ""):
        self.args_list = list(args)
        self.returncode = returncode
        self.stderr = stderr
        detail = stderr.strip() or f"exit code {returncode}"
        super().__init__(f"kubectl {' '.join(self.args_list)} failed: {detail}")


class SecretNotFound(KubeForwardError):
    """Secret 不存在或缺少字段"""

    def __init__(self, name: str, missing_keys: Sequence[str]):
        self.name = name
        self.missing_keys = list(missing_keys)
        super().__init__(
            f"Could not read secret {name} (missing keys: {', '.join(self.missing_keys)})"
        )
