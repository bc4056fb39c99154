from nornir.core.task import Task, Result

from kubestrap.core.decorators import automated_step, automated_substep
from kubestrap.core.models import TaskStatus, StandardResult, SubTaskResult
from kubestrap.tasks import fail
from kubestrap.utils.linux import run_command

SUPPORTED_DISTROS = ["ubuntu", "debian"]


def parse_os_release(content: str) -> dict:
    """Parses /etc/os-release into a dictionary."""
    data = {}
    for line in content.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        data[key] = value.strip().strip('"').strip("'")
    return data


@automated_substep("Read OS Release")
def _get_os_release(task: Task) -> SubTaskResult:
    res = run_command(task, "cat /etc/os-release")
    if res.failed:
        return SubTaskResult(success=False, message="Could not read /etc/os-release")

    return SubTaskResult(success=True, message="OS Release parsed", data=parse_os_release(res.result))


@automated_substep("Check CPU Architecture")
def _get_cpu_arch(task: Task) -> SubTaskResult:
    """Gets architecture (amd64/arm64) via dpkg for accurate deb repo mapping."""
    res = run_command(task, "dpkg --print-architecture")
    if res.failed:
        return SubTaskResult(success=False, message="Could not determine architecture")

    arch = res.result.strip()
    return SubTaskResult(success=True, message=f"Architecture: {arch}", data=arch)


@automated_step("Gather System Facts")
def gather_system_facts(task: Task) -> Result:
    """
    Detects OS Distribution, Codename and Architecture.
    Fails if the OS is not supported (Ubuntu/Debian).
    """
    s1 = _get_os_release(task)
    if not s1.success: return fail(task, s1)
    os_data = s1.data

    s2 = _get_cpu_arch(task)
    if not s2.success: return fail(task, s2)
    arch = s2.data

    distro_id = os_data.get("ID", "unknown").lower()
    if distro_id not in SUPPORTED_DISTROS:
        return Result(
            host=task.host,
            failed=True,
            result=StandardResult(
                status=TaskStatus.FAILED,
                message=f"Unsupported OS: {distro_id}. Only {SUPPORTED_DISTROS} are supported."
            )
        )

    # Other tasks read them via task.host["os_facts"]
    task.host["os_facts"] = {
        "id": distro_id,
        "codename": os_data.get("VERSION_CODENAME", "unknown"),
        "version_id": os_data.get("VERSION_ID", "unknown"),
        "arch": arch
    }

    return Result(
        host=task.host,
        result=StandardResult(
            status=TaskStatus.OK,
            message=f"OS Verified: {distro_id} {os_data.get('VERSION_ID')} ({os_data.get('VERSION_CODENAME')}) on {arch}",
            data=task.host["os_facts"]
        )
    )
