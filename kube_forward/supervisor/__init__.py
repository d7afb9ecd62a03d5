"""kubectl port-forward supervisor."""

from .manager import ForwardSupervisor, pid_alive, read_log_head

__all__ = ["ForwardSupervisor", "pid_alive", "read_log_head"]
