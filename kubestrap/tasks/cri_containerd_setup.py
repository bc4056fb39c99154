import re

from nornir.core.task import Task, Result

from kubestrap.core.decorators import automated_step, automated_substep
from kubestrap.core.models import TaskStatus, StandardResult, SubTaskResult
from kubestrap.tasks import fail, app_config
from kubestrap.utils.linux import (
    apt_install,
    add_apt_repository,
    run_command,
    write_file,
    read_file,
    remote_file_exists,
    systemctl,
    service_is_active,
    user_in_group,
    add_user_to_group,
)

CONTAINERD_CONFIG = "/etc/containerd/config.toml"
DOCKER_KEYRING = "/etc/apt/keyrings/docker.gpg"
APT_PREREQUISITES = ["ca-certificates", "curl", "gnupg", "apt-transport-https"]

DISABLED_CRI_RE = re.compile(r'^(\s*disabled_plugins\s*=\s*)\[([^\]]*)\]', re.MULTILINE)


def patch_containerd_config(content: str, systemd_cgroup: bool = True) -> str:
    """
    Enables SystemdCgroup and re-enables the CRI plugin
    (containerd.io ships with disabled_plugins = ["cri"]).
    """
    if systemd_cgroup:
        content = re.sub(r"(\bSystemdCgroup\s*=\s*)false", r"\1true", content)

    def _drop_cri(match):
        plugins = [p.strip() for p in match.group(2).split(",") if p.strip()]
        plugins = [p for p in plugins if p.strip("'\"") != "cri"]
        return f"{match.group(1)}[{', '.join(plugins)}]"

    return DISABLED_CRI_RE.sub(_drop_cri, content)


# --- SUB-STEPS ---

@automated_substep("Install Dependencies")
def _install_deps(task: Task) -> SubTaskResult:
    """
    Installs prerequisites for fetching repositories over HTTPS.
    """
    res = apt_install(task, APT_PREREQUISITES)
    if res.failed:
        return SubTaskResult(success=False, message=f"Failed to install dependencies: {res.result}")
    return SubTaskResult(success=True, message="Dependencies installed", changed=res.changed)


@automated_substep("Configure Docker Repository")
def _add_docker_repo(task: Task, repo_url: str) -> SubTaskResult:
    facts = task.host.get("os_facts")
    if not facts:
        return SubTaskResult(success=False, message="Missing OS Facts. Run 'gather_system_facts' first.")

    distro_id = facts.get("id", "ubuntu")
    codename = facts.get("codename", "jammy")
    arch = facts.get("arch", "amd64")

    repo_string = (
        f"deb [arch={arch} signed-by={DOCKER_KEYRING}] "
        f"{repo_url}/{distro_id} {codename} stable\n"
    )

    return add_apt_repository(
        task,
        repo_name="docker",
        repo_string=repo_string,
        gpg_key_url=f"{repo_url}/{distro_id}/gpg",
        gpg_key_path=DOCKER_KEYRING,
    )


@automated_substep("Install Runtime Packages")
def _install_runtime(task: Task, packages) -> SubTaskResult:
    res = apt_install(task, packages)
    if res.failed:
        return SubTaskResult(success=False, message=f"Apt install failed: {res.result}")

    return SubTaskResult(success=True, message=res.result, changed=res.changed)


@automated_substep("Configure Containerd (config.toml)")
def _configure_containerd(task: Task, systemd_cgroup: bool) -> SubTaskResult:
    """
    Generates default config and enables SystemdCgroup.
    """
    generated = False
    if not remote_file_exists(task, CONTAINERD_CONFIG):
        res_gen = run_command(task, f"mkdir -p /etc/containerd && containerd config default > {CONTAINERD_CONFIG}", sudo=True)
        if res_gen.failed:
            return SubTaskResult(success=False, message=f"Failed to generate default config: {res_gen.result}")
        generated = True

    content = read_file(task, CONTAINERD_CONFIG)
    patched = patch_containerd_config(content, systemd_cgroup)

    if patched == content:
        msg = "Default config generated" if generated else "Config already correct"
        return SubTaskResult(success=True, message=msg, changed=generated)

    res_patch = write_file(task, CONTAINERD_CONFIG, patched)
    if res_patch.failed:
        return SubTaskResult(success=False, message=f"Failed to patch config.toml: {res_patch.result}")

    return SubTaskResult(success=True, message="Config patched (SystemdCgroup=true, CRI enabled)", changed=True)


@automated_substep("Enable Containerd Service")
def _enable_service(task: Task, restart: bool) -> SubTaskResult:
    """
    Enables containerd; restarts it when the config changed or it is not running.
    """
    if restart or not service_is_active(task, "containerd"):
        res = systemctl(task, "containerd", "restart", enable=True)
        if res.failed:
            return SubTaskResult(success=False, message=f"Failed to restart service: {res.result}")
        return SubTaskResult(success=True, message="Service restarted & enabled", changed=True)

    res = systemctl(task, "containerd", "enable")
    if res.failed:
        return SubTaskResult(success=False, message=f"Failed to enable service: {res.result}")
    return SubTaskResult(success=True, message="Service running & enabled")


@automated_substep("Runtime Group Membership")
def _ensure_group_membership(task: Task, group: str) -> SubTaskResult:
    user = task.host.username
    if not user:
        return SubTaskResult(success=True, message="No login user in inventory, nothing to add")

    if user_in_group(task, user, group):
        return SubTaskResult(success=True, message=f"'{user}' already in '{group}'")

    res = add_user_to_group(task, user, group)
    if res.failed:
        return SubTaskResult(success=False, message=f"Failed to add '{user}' to '{group}': {res.result}")

    return SubTaskResult(success=True, message=f"'{user}' added to '{group}'", changed=True)


# --- MAIN TASK ---

@automated_step("Install & Configure Containerd")
def install_containerd(task: Task) -> Result:
    """
    Full pipeline to setup Containerd as CRI for Kubernetes.
    Supports multi-arch and multi-distro via OS Facts.
    """
    runtime_conf = app_config(task)["runtime"]

    s1 = _install_deps(task)
    if not s1.success: return fail(task, s1)

    s2 = _add_docker_repo(task, runtime_conf["repo_url"])
    if not s2.success: return fail(task, s2)

    s3 = _install_runtime(task, runtime_conf["packages"])
    if not s3.success: return fail(task, s3)

    s4 = _configure_containerd(task, runtime_conf.get("systemd_cgroup", True))
    if not s4.success: return fail(task, s4)

    s5 = _enable_service(task, restart=s3.changed or s4.changed)
    if not s5.success: return fail(task, s5)

    s6 = _ensure_group_membership(task, runtime_conf["group"])
    if not s6.success: return fail(task, s6)

    changed = any(step.changed for step in (s1, s2, s3, s4, s5, s6))
    return Result(
        host=task.host,
        result=StandardResult(
            status=TaskStatus.CHANGED if changed else TaskStatus.OK,
            message="Containerd installed, configured (SystemdCgroup) & running." if changed
            else "Containerd already converged."
        )
    )
