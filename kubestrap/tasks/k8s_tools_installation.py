from nornir.core.task import Task, Result

from kubestrap.core.decorators import automated_step, automated_substep
from kubestrap.core.models import TaskStatus, StandardResult, SubTaskResult
from kubestrap.tasks import fail, app_config
from kubestrap.utils.linux import (
    add_apt_repository,
    apt_install,
    apt_hold,
    systemctl,
)

KUBE_PACKAGES = ["kubelet", "kubeadm", "kubectl"]
K8S_KEYRING = "/etc/apt/keyrings/kubernetes-apt-keyring.gpg"


def repo_version(version: str) -> str:
    """'1.29.3' / 'v1.29' -> 'v1.29' (pkgs.k8s.io publishes one repo per minor)."""
    major, minor = version.lstrip("v").split(".")[:2]
    return f"v{major}.{minor}"


def pinned_packages(package_version=None):
    if not package_version:
        return list(KUBE_PACKAGES)
    return [f"{pkg}={package_version}" for pkg in KUBE_PACKAGES]


# --- SUB-STEPS ---

@automated_substep("Add Kubernetes Repository")
def _add_k8s_repo(task: Task, k8s_version: str) -> SubTaskResult:
    facts = task.host.get("os_facts")
    if not facts:
        return SubTaskResult(success=False, message="Missing OS Facts")

    base_url = f"https://pkgs.k8s.io/core:/stable:/{k8s_version}/deb"
    repo_string = f"deb [arch={facts['arch']} signed-by={K8S_KEYRING}] {base_url}/ /\n"

    return add_apt_repository(
        task,
        repo_name="kubernetes",
        repo_string=repo_string,
        gpg_key_url=f"{base_url}/Release.key",
        gpg_key_path=K8S_KEYRING,
    )


@automated_substep("Install Kube Tools")
def _install_packages(task: Task, package_version) -> SubTaskResult:
    res = apt_install(task, pinned_packages(package_version))
    if res.failed:
        return SubTaskResult(success=False, message=f"Apt install failed: {res.result}")

    return SubTaskResult(success=True, message=res.result, changed=res.changed)


@automated_substep("Hold Package Versions")
def _hold_packages(task: Task) -> SubTaskResult:
    res = apt_hold(task, KUBE_PACKAGES)
    if res.failed:
        return SubTaskResult(success=False, message="Failed to hold packages")

    return SubTaskResult(success=True, message="Version lock enabled (held)")


@automated_substep("Enable Kubelet Service")
def _enable_service(task: Task) -> SubTaskResult:
    """
    Enables kubelet without starting it (it crash-loops until kubeadm configures it).
    """
    res = systemctl(task, "kubelet", "enable")
    if res.failed:
        return SubTaskResult(success=False, message="Failed to enable service")

    return SubTaskResult(success=True, message="Kubelet enabled")


# --- MAIN TASK ---

@automated_step("Install Kubernetes Tools")
def install_kubernetes_tools(task: Task) -> Result:
    """
    Installs kubeadm, kubelet, and kubectl for the configured version.
    """
    k8s_conf = app_config(task)["k8s"]
    k8s_ver = repo_version(k8s_conf["version"])

    s1 = _add_k8s_repo(task, k8s_ver)
    if not s1.success: return fail(task, s1)

    s2 = _install_packages(task, k8s_conf.get("package_version"))
    if not s2.success: return fail(task, s2)

    s3 = _hold_packages(task)
    if not s3.success: return fail(task, s3)

    s4 = _enable_service(task)
    if not s4.success: return fail(task, s4)

    changed = s1.changed or s2.changed
    return Result(
        host=task.host,
        result=StandardResult(
            status=TaskStatus.CHANGED if changed else TaskStatus.OK,
            message=f"Kubernetes tools ({k8s_ver}) installed & held."
        )
    )
