from nornir.core.task import Task, Result

from kubestrap.core.decorators import automated_step
from kubestrap.core.models import TaskStatus, StandardResult
from kubestrap.utils.linux import check_connectivity
from kubestrap.utils.logger import sys_logger


def parse_avg_latency(output: str):
    """Extracts the avg from 'rtt min/avg/max/mdev = 12.3/14.5/...' ('' if absent)."""
    if "avg" not in output:
        return ""
    try:
        return output.split("avg")[1].split("=")[1].split("/")[1].strip()
    except IndexError:
        return ""


@automated_step("Check Internet Connectivity")
def check_internet_access(task: Task) -> Result:
    """
    Verifies if the host can reach the internet (Ping 1.1.1.1).
    Package repositories are unreachable otherwise.
    """
    target = "1.1.1.1"
    cmd_result = check_connectivity(task, target, count=2)

    if cmd_result.failed:
        return Result(
            host=task.host,
            failed=True,
            result=StandardResult(
                status=TaskStatus.FAILED,
                message=f"Unreachable: {target}. Check network/DNS."
            )
        )

    msg = f"Connectivity to {target} verified."
    latency = parse_avg_latency(cmd_result.result)
    if latency:
        msg += f" (Latency: {latency}ms)"
    else:
        sys_logger.debug(f"[{task.host.name}] Could not parse ping output: {cmd_result.result!r}")

    return Result(
        host=task.host,
        result=StandardResult(
            status=TaskStatus.OK,
            message=msg
        )
    )
