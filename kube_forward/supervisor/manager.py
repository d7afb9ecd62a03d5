"""
kubectl port-forward 进程管理器

按顺序启动多条 port-forward 子进程，保持运行直到收到 SIGINT/SIGTERM：
    kubectl -n <namespace> port-forward svc/<service> <local_port>:<remote_port>

任意一条启动失败即停止全部已启动的 forward（不重试）。
"""

import asyncio
import logging
import os
import shutil
import signal
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import psutil
import typer

from kube_forward.config import SupervisorConfig
from kube_forward.errors import StartupFailure
from kube_forward.models import ForwardHandle, ForwardSpec, ForwardState, ForwardStatusResponse
from kube_forward.utils import error

logger = logging.getLogger(__name__)

LOG_HEAD_LINES = 120


def read_log_head(path: Path, limit: int = LOG_HEAD_LINES) -> List[str]:
    """读取日志文件前 limit 行"""
    lines = []
    try:
        with open(path, "r", encoding="utf-8", errors="replace") as f:
            for line in f:
                if len(lines) >= limit:
                    break
                lines.append(line.rstrip("\n"))
    except OSError as e:
        logger.debug(f"cannot read {path}: {e}")
    return lines


def pid_alive(pid: Optional[int]) -> bool:
    """进程存在且不是僵尸进程"""
    if pid is None:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


class ForwardSupervisor:
    def __init__(
        self,
        namespace: str = "default",
        kubectl: str = "kubectl",
        kubeconfig: Optional[str] = None,
        liveness_window: float = 0.4,
        poll_interval: float = 0.05,
        stop_timeout: float = 5.0,
    ):
        self.namespace = namespace
        self.kubectl = kubectl
        self.kubeconfig = kubeconfig
        self.liveness_window = liveness_window
        self.poll_interval = poll_interval
        self.stop_timeout = stop_timeout

        # 本次运行创建过的全部 handle（按启动顺序），供状态查询
        self._history: List[ForwardHandle] = []
        # 当前活动的 handle，key 为本地端口
        self._active: Dict[int, ForwardHandle] = {}
        self._procs: Dict[int, asyncio.subprocess.Process] = {}
        # 每条 RUNNING forward 一个退出监视任务
        self._watchers: List[asyncio.Task] = []
        self._shutdown_started = False
        self._stop_event: Optional[asyncio.Event] = None
        self._stop_signal: Optional[str] = None

    @classmethod
    def from_config(cls, config: SupervisorConfig) -> "ForwardSupervisor":
        return cls(
            namespace=config.namespace,
            kubectl=config.kubectl,
            kubeconfig=config.kubeconfig,
            liveness_window=config.liveness_window,
            poll_interval=config.poll_interval,
            stop_timeout=config.stop_timeout,
        )

    @property
    def handles(self) -> List[ForwardHandle]:
        return list(self._history)

    @property
    def active(self) -> List[ForwardHandle]:
        return list(self._active.values())

    def snapshot(self) -> List[ForwardStatusResponse]:
        """当前所有 forward 的状态（可在其他线程调用）"""
        result = []
        for handle in list(self._history):
            spec = handle.spec
            result.append(ForwardStatusResponse(
                label=spec.label,
                local_port=spec.local_port,
                target=spec.target,
                url=spec.url,
                pid=handle.pid,
                state=handle.state,
                alive=handle.state == ForwardState.RUNNING and pid_alive(handle.pid),
                log_file=str(spec.log_file),
            ))
        return result

    def build_command(self, spec: ForwardSpec) -> List[str]:
        kubectl_path = shutil.which(self.kubectl)
        if not kubectl_path:
            raise FileNotFoundError(f"kubectl binary not found: {self.kubectl}")

        cmd = [
            kubectl_path,
            "-n",
            self.namespace,
            "port-forward",
            f"svc/{spec.remote_service}",
            f"{spec.local_port}:{spec.remote_port}",
        ]
        return cmd

    def child_env(self) -> Optional[Dict[str, str]]:
        """子进程环境变量；KUBECONFIG 可以是冒号分隔的多个文件，由 kubectl 自行合并"""
        if not self.kubeconfig:
            return None
        return {**os.environ, "KUBECONFIG": self.kubeconfig}

    async def start(self, spec: ForwardSpec) -> ForwardHandle:
        """
        启动一条 port-forward 并做存活检查

        Returns:
            状态为 RUNNING 的 ForwardHandle

        Raises:
            ValueError: 本地端口已被本次运行的其他 forward 占用
            StartupFailure: 子进程在存活检查窗口内退出（此时已停止全部 forward）
        """
        if self._shutdown_started:
            raise RuntimeError("supervisor already shut down")
        if spec.local_port in self._active:
            other = self._active[spec.local_port].spec.label
            raise ValueError(f"local port {spec.local_port} already used by '{other}'")

        cmd = self.build_command(spec)
        typer.echo(
            f"Starting port-forward: localhost:{spec.local_port} -> {spec.target}  (log: {spec.log_file})"
        )

        handle = ForwardHandle(spec=spec)
        self._history.append(handle)

        try:
            spec.log_file.parent.mkdir(parents=True, exist_ok=True)
            with open(spec.log_file, "wb") as log:
                proc = await asyncio.create_subprocess_exec(
                    *cmd,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=True,
                    env=self.child_env(),
                )
        except OSError as e:
            handle.state = ForwardState.FAILED
            error(f"Failed to start forward for {spec.remote_service}: {e}")
            await self.shutdown()
            raise StartupFailure(spec.label, None, [str(e)]) from e

        handle.pid = proc.pid
        self._active[spec.local_port] = handle
        self._procs[spec.local_port] = proc
        logger.debug(f"{spec.label}: spawned pid {proc.pid}: {' '.join(cmd)}")

        if await self._wait_liveness(proc):
            handle.state = ForwardState.RUNNING
            logger.info(f"{spec.label}: port-forward running (pid={proc.pid})")
            self._watchers.append(asyncio.create_task(self._watch(handle, proc)))
            return handle

        await self._fail(handle, proc)

    async def _watch(self, handle: ForwardHandle, proc: asyncio.subprocess.Process):
        """RUNNING 之后等待子进程退出；非 shutdown 引起的退出标记为 FAILED（不重启）"""
        rc = await proc.wait()
        if self._shutdown_started or (self._stop_event is not None and self._stop_event.is_set()):
            return

        spec = handle.spec
        handle.returncode = rc
        handle.state = ForwardState.FAILED
        self._active.pop(spec.local_port, None)
        self._procs.pop(spec.local_port, None)
        error(f"Port-forward {spec.label} ({spec.url} -> {spec.target}) exited (rc={rc}). See {spec.log_file}")
        logger.warning(f"{spec.label}: kubectl exited after startup (rc={rc})")

    async def _wait_liveness(self, proc: asyncio.subprocess.Process) -> bool:
        """在 liveness_window 内轮询，进程一直存活则返回 True"""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.liveness_window
        while True:
            if proc.returncode is not None or not pid_alive(proc.pid):
                return False
            remaining = deadline - loop.time()
            if remaining <= 0:
                return True
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def _fail(self, handle: ForwardHandle, proc: asyncio.subprocess.Process):
        spec = handle.spec
        try:
            handle.returncode = await asyncio.wait_for(proc.wait(), timeout=self.stop_timeout)
        except asyncio.TimeoutError:
            handle.returncode = proc.returncode
        handle.state = ForwardState.FAILED
        self._active.pop(spec.local_port, None)
        self._procs.pop(spec.local_port, None)

        log_head = read_log_head(spec.log_file)
        error(f"Failed to start forward for {spec.remote_service}. See {spec.log_file}:")
        for line in log_head:
            typer.echo(line, err=True)
        logger.warning(f"{spec.label}: kubectl exited during startup (rc={handle.returncode})")

        await self.shutdown()
        raise StartupFailure(spec.label, handle.returncode, log_head)

    async def shutdown(self):
        """
        停止全部 forward

        幂等：只有第一次调用会发送 SIGTERM，之后的调用直接返回。
        阻塞直到所有子进程被回收。
        """
        if self._shutdown_started:
            logger.debug("shutdown already done")
            return
        self._shutdown_started = True

        typer.echo("")
        typer.echo("Stopping port-forwards...")

        stopping = []
        for port, handle in list(self._active.items()):
            proc = self._procs.get(port)
            if proc is None:
                continue
            if proc.returncode is None:
                try:
                    proc.terminate()
                except ProcessLookupError:
                    logger.debug(f"{handle.spec.label}: pid {proc.pid} already exited")
            stopping.append((handle, proc))

        await asyncio.gather(*(self._reap(handle, proc) for handle, proc in stopping))
        # 所有子进程都已退出，监视任务随之结束
        await asyncio.gather(*self._watchers, return_exceptions=True)
        self._watchers.clear()

        self._active.clear()
        self._procs.clear()
        typer.echo("Done.")

    async def _reap(self, handle: ForwardHandle, proc: asyncio.subprocess.Process):
        try:
            handle.returncode = await asyncio.wait_for(proc.wait(), timeout=self.stop_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{handle.spec.label}: pid {proc.pid} ignored SIGTERM, killing")
            try:
                proc.kill()
            except ProcessLookupError:
                pass
            handle.returncode = await proc.wait()
        handle.state = ForwardState.STOPPED
        logger.debug(f"{handle.spec.label}: stopped (rc={handle.returncode})")

    def request_stop(self, signame: str = "SIGTERM"):
        """信号处理入口，重复信号只记录日志"""
        if self._stop_event is None:
            return
        if self._stop_event.is_set():
            logger.debug(f"received {signame} while already stopping")
            return
        self._stop_signal = signame
        logger.info(f"received {signame}, stopping")
        self._stop_event.set()

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> List[int]:
        installed = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop, sig.name)
                installed.append(sig)
            except (NotImplementedError, RuntimeError, ValueError) as e:
                logger.debug(f"cannot install handler for {sig.name}: {e}")
        return installed

    def print_summary(self):
        typer.echo("")
        typer.echo("Forwards running (press Ctrl-C to stop):")
        width = max((len(h.spec.label) for h in self.active), default=0)
        for handle in self.active:
            spec = handle.spec
            line = f"  {spec.label.ljust(width)} -> {spec.url}"
            if spec.note:
                line += f"   ({spec.note})"
            typer.echo(line)
        typer.echo("")
        typer.echo("Logs: " + ", ".join(str(h.spec.log_file) for h in self.active))
        typer.echo("")

    async def run(self, specs: Sequence[ForwardSpec]):
        """
        依次启动 specs 中的 forward，然后阻塞直到 SIGINT/SIGTERM

        无论以何种方式退出都会执行 shutdown()。
        StartupFailure 会继续向上抛出。
        """
        loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()
        installed = self._install_signal_handlers(loop)
        try:
            for spec in specs:
                if self._stop_event.is_set():
                    break
                await self.start(spec)

            if not self._stop_event.is_set():
                self.print_summary()
                await self._stop_event.wait()
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)
            await self.shutdown()
