import re
from typing import List, Dict

from nornir.core.task import Task, Result

from kubestrap.core.decorators import automated_step, automated_substep
from kubestrap.core.models import TaskStatus, StandardResult, SubTaskResult
from kubestrap.tasks import fail, skipped, app_config
from kubestrap.utils.linux import (
    write_file,
    read_file,
    is_module_loaded,
    load_module,
    reload_sysctl,
    is_swap_active,
    disable_swap as swapoff,
    command_exists,
    ufw_is_active,
    ufw_disable,
)

MODULES_FILE = "/etc/modules-load.d/k8s.conf"
SYSCTL_FILE = "/etc/sysctl.d/k8s.conf"
FSTAB_FILE = "/etc/fstab"

# Lines that are NOT comments and mount a swap device/file
SWAP_LINE_RE = re.compile(r"^\s*[^#\s]\S*\s+\S+\s+swap(\s|$)")


def comment_swap_entries(fstab: str):
    """
    Comments out active swap entries.
    Returns the new content and whether anything changed.
    """
    new_lines = []
    changed = False

    for line in fstab.splitlines():
        if SWAP_LINE_RE.search(line):
            new_lines.append(f"# {line} # Disabled by kubestrap")
            changed = True
        else:
            new_lines.append(line)

    return "\n".join(new_lines) + "\n", changed


def render_sysctl(params: Dict[str, str]) -> str:
    return "".join(f"{key} = {value}\n" for key, value in params.items())


# --- SUB-STEPS ---

@automated_substep("Load Kernel Modules")
def _load_kernel_modules(task: Task, modules: List[str]) -> SubTaskResult:
    """
    Loads required kernel modules immediately and persists them for boot.
    """
    res_persist = write_file(task, MODULES_FILE, "\n".join(modules) + "\n")
    if res_persist.failed:
        return SubTaskResult(success=False, message=f"Failed to write modules config: {res_persist.result}")

    loaded = []
    failed_mods = []
    for mod in modules:
        if is_module_loaded(task, mod):
            continue
        if load_module(task, mod).failed:
            failed_mods.append(mod)
        else:
            loaded.append(mod)

    if failed_mods:
        return SubTaskResult(success=False, message=f"Failed to load modules: {failed_mods}")

    changed = res_persist.changed or bool(loaded)
    return SubTaskResult(success=True, message=f"Modules loaded & persisted: {', '.join(modules)}", changed=changed)


@automated_substep("Configure Sysctl Parameters")
def _configure_sysctl(task: Task, params: Dict[str, str]) -> SubTaskResult:
    """
    Writes sysctl params to file and reloads sysctl when the file changed.
    """
    res_write = write_file(task, SYSCTL_FILE, render_sysctl(params))
    if res_write.failed:
        return SubTaskResult(success=False, message=f"Failed to write sysctl config: {res_write.result}")

    if not res_write.changed:
        return SubTaskResult(success=True, message="Sysctl parameters already applied")

    if reload_sysctl(task).failed:
        return SubTaskResult(success=False, message="Failed to reload sysctl")

    return SubTaskResult(success=True, message=f"Applied {len(params)} sysctl parameters", changed=True)


@automated_substep("Disable Swap (Runtime)")
def _disable_swap_runtime(task: Task) -> SubTaskResult:
    if not is_swap_active(task):
        return SubTaskResult(success=True, message="Swap already disabled")

    if swapoff(task).failed:
        return SubTaskResult(success=False, message="Failed to run swapoff")

    return SubTaskResult(success=True, message="Swap disabled at runtime", changed=True)


@automated_substep("Disable Swap (Fstab)")
def _disable_swap_fstab(task: Task) -> SubTaskResult:
    """
    Comments out swap entries in /etc/fstab to persist across reboots.
    """
    current_content = read_file(task, FSTAB_FILE)
    if not current_content:
        return SubTaskResult(success=False, message=f"Could not read {FSTAB_FILE}")

    new_content, changed = comment_swap_entries(current_content)
    if not changed:
        return SubTaskResult(success=True, message=f"{FSTAB_FILE} already configured (no active swap lines)")

    res_write = write_file(task, FSTAB_FILE, new_content)
    if res_write.failed:
        return SubTaskResult(success=False, message=f"Failed to update fstab: {res_write.result}")

    return SubTaskResult(success=True, message=f"{FSTAB_FILE} updated (swap commented)", changed=True)


# --- MAIN TASKS ---

@automated_step("Disable Firewall")
def disable_firewall(task: Task) -> Result:
    """
    Turns ufw off so that cluster ports are reachable between nodes.
    """
    if app_config(task).get("test_mode"):
        return skipped(task, "Test mode: firewall left untouched")

    if not command_exists(task, "ufw"):
        return Result(host=task.host, result=StandardResult(TaskStatus.OK, "ufw not installed"))

    if not ufw_is_active(task):
        return Result(host=task.host, result=StandardResult(TaskStatus.OK, "Firewall already inactive"))

    res = ufw_disable(task)
    if res.failed:
        return Result(
            host=task.host,
            failed=True,
            result=StandardResult(TaskStatus.FAILED, f"ufw disable failed: {res.result}")
        )

    return Result(host=task.host, result=StandardResult(TaskStatus.CHANGED, "Firewall disabled"))


@automated_step("Disable Swap")
def disable_swap(task: Task) -> Result:
    """
    kubelet refuses to start with swap on: disable it now and on boot.
    """
    if app_config(task).get("test_mode"):
        return skipped(task, "Test mode: swap left untouched")

    s1 = _disable_swap_runtime(task)
    if not s1.success: return fail(task, s1)

    s2 = _disable_swap_fstab(task)
    if not s2.success: return fail(task, s2)

    changed = s1.changed or s2.changed
    return Result(
        host=task.host,
        result=StandardResult(
            status=TaskStatus.CHANGED if changed else TaskStatus.OK,
            message="Swap disabled" if changed else "Swap already disabled"
        )
    )


@automated_step("Prepare Kubernetes Node")
def prepare_k8s_node(task: Task) -> Result:
    """
    Prepares the kernel for Kubernetes networking: Modules, Sysctl.
    """
    node_conf = app_config(task)["node"]

    s1 = _load_kernel_modules(task, node_conf.get("kernel_modules", []))
    if not s1.success: return fail(task, s1)

    s2 = _configure_sysctl(task, node_conf.get("sysctl_params", {}))
    if not s2.success: return fail(task, s2)

    changed = s1.changed or s2.changed
    return Result(
        host=task.host,
        result=StandardResult(
            status=TaskStatus.CHANGED if changed else TaskStatus.OK,
            message="Kernel modules loaded, sysctl applied." if changed else "Kernel already configured."
        )
    )
