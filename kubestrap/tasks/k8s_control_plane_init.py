import ipaddress
import os
from pathlib import Path

import yaml
from nornir.core.task import Task, Result

from kubestrap.core.decorators import automated_step, automated_substep
from kubestrap.core.models import TaskStatus, StandardResult, SubTaskResult
from kubestrap.tasks import fail, app_config
from kubestrap.utils.linux import (
    ADMIN_KUBECONFIG,
    write_file,
    read_file,
    remote_file_exists,
    remove_file,
    run_command,
    kubeadm_init,
)

KUBEADM_CONFIG_PATH = "/tmp/kubeadm-config.yaml"


def kubeadm_api_version(version: str) -> str:
    """kubeadm.k8s.io/v1beta4 is the default config API from 1.31 on."""
    major, minor = (int(part) for part in version.lstrip("v").split(".")[:2])
    if (major, minor) >= (1, 31):
        return "kubeadm.k8s.io/v1beta4"
    return "kubeadm.k8s.io/v1beta3"


def render_kubeadm_config(
        node_name: str,
        node_ip: str,
        k8s_conf: dict,
) -> str:
    """Builds the InitConfiguration + ClusterConfiguration documents."""
    api_version = kubeadm_api_version(k8s_conf["version"])

    if api_version.endswith("v1beta4"):
        kubelet_args = [{"name": "node-ip", "value": node_ip}]
    else:
        kubelet_args = {"node-ip": node_ip}

    node_registration = {
        "name": node_name,
        "criSocket": k8s_conf["cri_socket"],
        "kubeletExtraArgs": kubelet_args,
    }
    if k8s_conf.get("untaint_control_plane"):
        node_registration["taints"] = []

    init_config = {
        "apiVersion": api_version,
        "kind": "InitConfiguration",
        "localAPIEndpoint": {"advertiseAddress": node_ip},
        "nodeRegistration": node_registration,
    }

    cluster_config = {
        "apiVersion": api_version,
        "kind": "ClusterConfiguration",
        "networking": {"podSubnet": k8s_conf["pod_network_cidr"]},
    }
    if k8s_conf.get("control_plane_endpoint"):
        cluster_config["controlPlaneEndpoint"] = k8s_conf["control_plane_endpoint"]

    return yaml.safe_dump_all([init_config, cluster_config], sort_keys=False)


# --- SUB-STEPS ---

@automated_substep("Check Cluster Status")
def _check_initialization(task: Task) -> SubTaskResult:
    if remote_file_exists(task, ADMIN_KUBECONFIG):
        return SubTaskResult(success=True, message="Cluster already initialized", data=True)

    return SubTaskResult(success=True, message="Cluster not initialized", data=False)


@automated_substep("Generate Kubeadm Config")
def _create_kubeadm_config(task: Task, k8s_conf: dict) -> SubTaskResult:
    # kubeadm needs an IP here; hosts reached by DNS name set data.node_ip
    node_ip = task.host.get("node_ip") or task.host.hostname
    try:
        ipaddress.ip_address(node_ip)
    except ValueError:
        return SubTaskResult(
            success=False,
            message=f"'{node_ip}' is not an IP address. Set data.node_ip for {task.host.name} in hosts.yaml"
        )

    content = render_kubeadm_config(task.host.name, node_ip, k8s_conf)

    res = write_file(task, KUBEADM_CONFIG_PATH, content, permissions="600")
    if res.failed:
        return SubTaskResult(success=False, message=f"Failed to write kubeadm config: {res.result}")

    return SubTaskResult(success=True, message="Config created")


@automated_substep("Run Kubeadm Init")
def _run_kubeadm_init(task: Task, timeout: int) -> SubTaskResult:
    res = kubeadm_init(task, KUBEADM_CONFIG_PATH, timeout=timeout)

    remove_file(task, KUBEADM_CONFIG_PATH, sudo=True)

    if res.failed:
        return SubTaskResult(success=False, message=f"Init failed. Output: {res.result[-200:]}")

    return SubTaskResult(success=True, message="Control Plane Initialized", changed=True)


@automated_substep("Setup User Kubeconfig (Remote)")
def _setup_user_kubeconfig(task: Task) -> SubTaskResult:
    """
    Copies admin.conf to the login user's ~/.kube/config.
    """
    user = task.host.username
    if not user:
        return SubTaskResult(success=True, message="No login user in inventory, skipped")

    cmd = (
        f"home=$(getent passwd {user} | cut -d: -f6) && "
        f"mkdir -p $home/.kube && "
        f"cp {ADMIN_KUBECONFIG} $home/.kube/config && "
        f"chown $(id -u {user}):$(id -g {user}) $home/.kube $home/.kube/config && "
        f"chmod 600 $home/.kube/config"
    )
    res = run_command(task, cmd, sudo=True)
    if res.failed:
        return SubTaskResult(success=False, message=f"Failed to set up kubeconfig: {res.result}")

    return SubTaskResult(success=True, message=f"kubeconfig installed for '{user}'")


@automated_substep("Fetch Admin Config")
def _fetch_kubeconfig_local(task: Task, local_path_str: str) -> SubTaskResult:
    """
    Reads remote admin.conf and writes it to the configured LOCAL path.
    """
    remote_content = read_file(task, ADMIN_KUBECONFIG)
    if not remote_content:
        return SubTaskResult(success=False, message="Failed to read remote admin.conf or file is empty")

    local_path = Path(local_path_str).expanduser()
    try:
        local_path.parent.mkdir(parents=True, exist_ok=True)
        with open(local_path, "w") as f:
            f.write(remote_content if remote_content.endswith("\n") else remote_content + "\n")
        os.chmod(local_path, 0o600)
    except OSError as e:
        return SubTaskResult(success=False, message=f"Failed to write local file: {e}")

    return SubTaskResult(success=True, message=f"Saved to {local_path}")


# --- MAIN TASK ---

@automated_step("Initialize Control Plane")
def init_control_plane(task: Task) -> Result:
    """
    Initializes the control plane with kubeadm (once) and distributes admin kubeconfig.
    """
    k8s_conf = app_config(task)["k8s"]

    step_check = _check_initialization(task)
    if not step_check.success: return fail(task, step_check)
    is_initialized = step_check.data

    if not is_initialized:
        s2 = _create_kubeadm_config(task, k8s_conf)
        if not s2.success: return fail(task, s2)

        s3 = _run_kubeadm_init(task, k8s_conf["command_timeout"])
        if not s3.success: return fail(task, s3)

    # --- CONVERGENCE (Run always) ---

    s4 = _setup_user_kubeconfig(task)
    if not s4.success: return fail(task, s4)

    if k8s_conf.get("local_kubeconfig_path"):
        s5 = _fetch_kubeconfig_local(task, k8s_conf["local_kubeconfig_path"])
        if not s5.success: return fail(task, s5)

    return Result(
        host=task.host,
        result=StandardResult(
            status=TaskStatus.CHANGED if not is_initialized else TaskStatus.OK,
            message="Control plane initialized" if not is_initialized else "Cluster already up"
        )
    )
