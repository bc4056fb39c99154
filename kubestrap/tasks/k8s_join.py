import dataclasses
import os
import re
from pathlib import Path
from typing import Optional

from nornir.core.task import Task, Result

from kubestrap.core.decorators import automated_step, automated_substep
from kubestrap.core.models import TaskStatus, StandardResult, SubTaskResult, JoinCredential
from kubestrap.tasks import fail, app_config
from kubestrap.utils.linux import (
    KUBELET_KUBECONFIG,
    remote_file_exists,
    kubeadm_token_create,
    kubeadm_join,
)

JOIN_CREDENTIAL_KEY = "join_credential"

JOIN_COMMAND_RE = re.compile(
    r"kubeadm\s+join\s+(?P<endpoint>\S+)"
    r"(?=.*--token\s+(?P<token>[a-z0-9]{6}\.[a-z0-9]{16}))"
    r"(?=.*--discovery-token-ca-cert-hash\s+(?P<hash>sha256:[0-9a-f]{64}))",
    re.DOTALL,
)


def parse_join_command(output: str) -> JoinCredential:
    """
    Parses the output of 'kubeadm token create --print-join-command'.
    Raises ValueError when no valid join command is found.
    """
    # kubeadm may wrap the command with '\' continuations
    flat = " ".join(output.replace("\\\n", " ").split())
    match = JOIN_COMMAND_RE.search(flat)
    if not match:
        raise ValueError(f"No valid kubeadm join command in output: {output.strip()[:200]!r}")

    return JoinCredential(
        endpoint=match.group("endpoint"),
        token=match.group("token"),
        ca_cert_hash=match.group("hash"),
    )


def _shared_data(task: Task) -> dict:
    """Run-wide data shared by every host (nornir inventory defaults)."""
    return task.nornir.inventory.defaults.data


def _load_credential(task: Task, join_command_path: Optional[str]) -> Optional[JoinCredential]:
    stored = _shared_data(task).get(JOIN_CREDENTIAL_KEY)
    if stored:
        return JoinCredential(**stored)

    if join_command_path and Path(join_command_path).expanduser().exists():
        return parse_join_command(Path(join_command_path).expanduser().read_text())

    return None


# --- SUB-STEPS ---

@automated_substep("Issue Join Token")
def _issue_token(task: Task, ttl: str) -> SubTaskResult:
    res = kubeadm_token_create(task, ttl)
    if res.failed:
        return SubTaskResult(success=False, message=f"Token creation failed: {res.result[-200:]}")

    credential = parse_join_command(res.result)
    return SubTaskResult(success=True, message=f"Token issued for {credential.endpoint}", data=credential)


@automated_substep("Save Join Command (Local)")
def _save_join_command(task: Task, credential: JoinCredential, local_path_str: str) -> SubTaskResult:
    local_path = Path(local_path_str).expanduser()
    try:
        local_path.parent.mkdir(parents=True, exist_ok=True)
        with open(local_path, "w") as f:
            f.write(credential.command + "\n")
        os.chmod(local_path, 0o600)
    except OSError as e:
        return SubTaskResult(success=False, message=f"Failed to write local file: {e}")

    return SubTaskResult(success=True, message=f"Saved to {local_path}")


@automated_substep("Check Node Membership")
def _check_joined(task: Task) -> SubTaskResult:
    if remote_file_exists(task, KUBELET_KUBECONFIG):
        return SubTaskResult(success=True, message="Node already joined", data=True)
    return SubTaskResult(success=True, message="Node not joined", data=False)


@automated_substep("Run Kubeadm Join")
def _run_kubeadm_join(task: Task, credential: JoinCredential, timeout: int) -> SubTaskResult:
    res = kubeadm_join(task, credential, task.host.name, timeout=timeout)
    if res.failed:
        return SubTaskResult(success=False, message=f"Join failed. Output: {res.result[-200:]}")

    return SubTaskResult(success=True, message=f"Joined via {credential.endpoint}", changed=True)


# --- MAIN TASKS ---

@automated_step("Create Join Credential")
def create_join_credential(task: Task) -> Result:
    """
    Issues a short-lived bootstrap token on the control plane and publishes
    the join command for the workers of this run.
    """
    k8s_conf = app_config(task)["k8s"]

    s1 = _issue_token(task, k8s_conf["join_token_ttl"])
    if not s1.success: return fail(task, s1)
    credential = s1.data

    _shared_data(task)[JOIN_CREDENTIAL_KEY] = dataclasses.asdict(credential)

    if k8s_conf.get("join_command_path"):
        s2 = _save_join_command(task, credential, k8s_conf["join_command_path"])
        if not s2.success: return fail(task, s2)

    return Result(
        host=task.host,
        result=StandardResult(
            status=TaskStatus.OK,
            message=f"Join credential issued for {credential.endpoint} (ttl {k8s_conf['join_token_ttl']})",
            data=credential
        )
    )


@automated_step("Join Cluster")
def join_cluster(task: Task) -> Result:
    """
    Joins a worker with the credential issued by the control plane.
    A node that already has a kubelet kubeconfig never joins again.
    """
    k8s_conf = app_config(task)["k8s"]

    s1 = _check_joined(task)
    if not s1.success: return fail(task, s1)
    if s1.data:
        return Result(host=task.host, result=StandardResult(TaskStatus.OK, "Node already part of the cluster"))

    credential = _load_credential(task, k8s_conf.get("join_command_path"))
    if credential is None:
        return Result(
            host=task.host,
            failed=True,
            result=StandardResult(
                TaskStatus.FAILED,
                "No join credential available. Run the control plane first or pass --join-command."
            )
        )

    s2 = _run_kubeadm_join(task, credential, k8s_conf["command_timeout"])
    if not s2.success: return fail(task, s2)

    return Result(
        host=task.host,
        result=StandardResult(TaskStatus.CHANGED, s2.message)
    )
