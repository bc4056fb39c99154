from typing import Dict

from nornir.core.task import Task, Result

from kubestrap.core.decorators import automated_step
from kubestrap.core.models import TaskStatus, StandardResult
from kubestrap.utils.linux import kubectl


def parse_node_status(output: str) -> Dict[str, str]:
    """
    Parses 'kubectl get nodes --no-headers' into {node: status}.
    """
    nodes = {}
    for line in output.splitlines():
        fields = line.split()
        if len(fields) >= 2:
            nodes[fields[0]] = fields[1]
    return nodes


def is_ready(status: str) -> bool:
    # 'Ready,SchedulingDisabled' is still Ready
    return status.split(",")[0] == "Ready"


@automated_step("Verify Cluster Nodes")
def verify_cluster_nodes(task: Task) -> Result:
    """
    Checks from the control plane that every inventory node is registered and Ready.
    """
    expected = task.host.get("cluster_nodes") or [task.host.name]

    res = kubectl(task, "get nodes --no-headers")
    if res.failed:
        return Result(
            host=task.host,
            failed=True,
            result=StandardResult(TaskStatus.FAILED, f"kubectl get nodes failed: {res.result[-200:]}")
        )

    nodes = parse_node_status(res.result)
    missing = [name for name in expected if name not in nodes]
    not_ready = [name for name in expected if name in nodes and not is_ready(nodes[name])]

    if missing or not_ready:
        problems = []
        if missing:
            problems.append(f"missing: {', '.join(missing)}")
        if not_ready:
            problems.append(f"not ready: {', '.join(not_ready)}")
        return Result(
            host=task.host,
            failed=True,
            result=StandardResult(TaskStatus.FAILED, "; ".join(problems), data=nodes)
        )

    return Result(
        host=task.host,
        result=StandardResult(TaskStatus.OK, f"All {len(expected)} nodes Ready", data=nodes)
    )
