from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class TaskStatus(str, Enum):
    OK = "OK"  # Task completed successfully or was idempotent (no change)
    CHANGED = "CHANGED"  # Task performed an action successfully
    WARNING = "WARNING"  # Task succeeded but with non-critical issues
    FAILED = "FAILED"  # Task failed, blocking execution
    SKIPPED = "SKIPPED"  # Task was skipped (test mode)


@dataclass
class StandardResult:
    """
    Standard payload to be included in Nornir's Result.result.
    """
    status: TaskStatus
    message: str
    data: Optional[Any] = None  # To pass data between tasks (context sharing)


@dataclass
class SubTaskResult:
    """Lightweight result object for internal sub-steps."""
    success: bool
    message: str
    exception: Optional[Exception] = None
    data: Optional[Any] = None
    changed: bool = False


@dataclass
class JoinCredential:
    """
    Bootstrap token issued by the control plane.
    Consumed once by every worker via 'kubeadm join'.
    """
    endpoint: str  # host:port of the API server
    token: str
    ca_cert_hash: str  # sha256:<hex>

    @property
    def command(self) -> str:
        return (
            f"kubeadm join {self.endpoint} --token {self.token} "
            f"--discovery-token-ca-cert-hash {self.ca_cert_hash}"
        )
