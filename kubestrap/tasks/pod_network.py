from nornir.core.task import Task, Result

from kubestrap.core.decorators import automated_step
from kubestrap.core.models import TaskStatus, StandardResult
from kubestrap.tasks import app_config
from kubestrap.utils.linux import kubectl


def apply_changed_objects(output: str) -> int:
    """Counts objects kubectl apply reported as created or configured."""
    return sum(
        1 for line in output.splitlines()
        if line.strip().endswith(" created") or line.strip().endswith(" configured")
    )


@automated_step("Install Pod Network")
def install_pod_network(task: Task) -> Result:
    """
    Applies the Calico manifest with the admin kubeconfig.
    kubectl apply is declarative: a converged cluster reports everything 'unchanged'.
    """
    k8s_conf = app_config(task)["k8s"]
    manifest_url = k8s_conf["pod_network_manifest_url"]

    res = kubectl(task, f"apply -f {manifest_url}", timeout=k8s_conf["command_timeout"])
    if res.failed:
        return Result(
            host=task.host,
            failed=True,
            result=StandardResult(TaskStatus.FAILED, f"Pod network install failed: {res.result[-200:]}")
        )

    changed = apply_changed_objects(res.result)
    if not changed:
        return Result(host=task.host, result=StandardResult(TaskStatus.OK, "Pod network already installed"))

    return Result(
        host=task.host,
        result=StandardResult(TaskStatus.CHANGED, f"Pod network applied ({changed} objects created/configured)")
    )
