import ipaddress
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, List, Union

import yaml
from dotenv import load_dotenv

# Load env vars if present
load_dotenv()

K8S_VERSION_RE = re.compile(r"^v?\d+\.\d+(\.\d+)?$")

TRUE_VALUES = {"1", "true", "yes", "on"}
FALSE_VALUES = {"0", "false", "no", "off"}


# --- DATACLASSES (SCHEMA) ---

@dataclass
class NodeSettings:
    """Defines OS level preparation of every cluster node."""
    kernel_modules: List[str] = field(default_factory=lambda: ["overlay", "br_netfilter"])
    sysctl_params: Dict[str, str] = field(default_factory=lambda: {
        "net.bridge.bridge-nf-call-iptables": "1",
        "net.bridge.bridge-nf-call-ip6tables": "1",
        "net.ipv4.ip_forward": "1",
    })


@dataclass
class RuntimeSettings:
    """Defines the container runtime installation."""
    packages: List[str] = field(default_factory=lambda: ["containerd.io"])
    repo_url: str = "https://download.docker.com/linux"
    group: str = "docker"
    systemd_cgroup: bool = True


@dataclass
class K8sSettings:
    """Defines Kubernetes node and cluster configuration."""
    version: str = "1.29"
    package_version: Optional[str] = None  # e.g. "1.29.3-1.1" to pin exact packages
    pod_network_cidr: str = "192.168.0.0/16"
    pod_network_manifest_url: str = (
        "https://raw.githubusercontent.com/projectcalico/calico/v3.27.3/manifests/calico.yaml"
    )
    control_plane_endpoint: Optional[str] = None
    cri_socket: str = "unix:///var/run/containerd/containerd.sock"
    untaint_control_plane: bool = False
    join_token_ttl: str = "1h"
    command_timeout: int = 600

    # Local artifacts (disabled when empty)
    local_kubeconfig_path: Optional[str] = None
    join_command_path: Optional[str] = None


@dataclass
class AppSettings:
    """Root configuration object."""
    k8s: K8sSettings = field(default_factory=K8sSettings)
    runtime: RuntimeSettings = field(default_factory=RuntimeSettings)
    node: NodeSettings = field(default_factory=NodeSettings)
    environment: str = "dev"
    test_mode: bool = False  # Skips firewall/swap changes
    num_workers: int = 20
    log_file: str = "logs/kubestrap.log"
    inventory_dir: str = "inventory"


# --- HELPERS ---

def parse_bool(value: Union[str, bool, None], name: str = "value") -> Optional[bool]:
    """Parses booleans coming from env vars or loosely typed YAML."""
    if value is None or isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in TRUE_VALUES:
        return True
    if normalized in FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean for {name}: '{value}'")


def _clean_none(d: Union[Dict, None]):
    if not isinstance(d, dict):
        return d
    cleaned = {k: _clean_none(v) for k, v in d.items() if v is not None}
    return {k: v for k, v in cleaned.items() if v != {}}


def _section(file_config: Dict, name: str) -> Dict:
    """A YAML section; an empty key (`k8s:`) counts as no overrides."""
    section = file_config.get(name) or {}
    if not isinstance(section, dict):
        raise ValueError(f"'{name}' must be a mapping, got {type(section).__name__}")
    return section


def _known(cls, values: Dict) -> Dict:
    """Filters only known keys to avoid init errors."""
    return {k: v for k, v in values.items() if k in cls.__annotations__}


def validate_settings(settings: AppSettings) -> AppSettings:
    if not K8S_VERSION_RE.match(str(settings.k8s.version)):
        raise ValueError(f"Invalid Kubernetes version '{settings.k8s.version}' (expected e.g. 1.29)")

    try:
        ipaddress.ip_network(settings.k8s.pod_network_cidr, strict=False)
    except ValueError:
        raise ValueError(f"Invalid pod network CIDR '{settings.k8s.pod_network_cidr}'")

    if settings.num_workers < 1:
        raise ValueError("num_workers must be >= 1")

    if not settings.runtime.packages:
        raise ValueError("runtime.packages must list at least one package")

    return settings


# --- LOADER LOGIC ---

def load_settings(config_path: str = "cluster_config.yaml") -> AppSettings:
    """
    Loads configuration merging: Defaults (Schema) < YAML File (Config) < Environment Vars.
    """

    # 1. Load YAML Config
    file_config = {}
    path = Path(config_path)
    if path.exists():
        try:
            with open(path, 'r') as f:
                file_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {config_path}: {e}")
        if not isinstance(file_config, dict):
            raise ValueError(f"{config_path} must contain a mapping at top level")

    # 2. Load Environment Variables (Overrides)
    # Only the keys that make sense to override via ENV
    num_workers_env = os.getenv("KUBESTRAP_NUM_WORKERS")
    env_config = _clean_none({
        "environment": os.getenv("ENV"),
        "test_mode": parse_bool(os.getenv("KUBESTRAP_TEST_MODE"), "KUBESTRAP_TEST_MODE"),
        "num_workers": int(num_workers_env) if num_workers_env else None,
        "log_file": os.getenv("KUBESTRAP_LOG_FILE"),
        "inventory_dir": os.getenv("KUBESTRAP_INVENTORY"),
        "k8s": {
            "version": os.getenv("K8S_VERSION"),
        }
    })

    # 3. Merge Logic (Priority: Env > File > Defaults)
    k8s_final = {**_section(file_config, "k8s"), **env_config.pop("k8s", {})}
    k8s_obj = K8sSettings(**_known(K8sSettings, k8s_final))
    k8s_obj.version = str(k8s_obj.version)
    k8s_obj.untaint_control_plane = parse_bool(k8s_obj.untaint_control_plane, "k8s.untaint_control_plane")

    runtime_obj = RuntimeSettings(**_known(RuntimeSettings, _section(file_config, "runtime")))
    runtime_obj.systemd_cgroup = parse_bool(runtime_obj.systemd_cgroup, "runtime.systemd_cgroup")

    node_obj = NodeSettings(**_known(NodeSettings, _section(file_config, "node")))
    node_obj.sysctl_params = {k: str(v) for k, v in (node_obj.sysctl_params or {}).items()}

    root_final = {
        k: v for k, v in {**file_config, **env_config}.items()
        if k not in ("k8s", "runtime", "node")
    }
    root_args = _known(AppSettings, root_final)
    if "test_mode" in root_args:
        root_args["test_mode"] = parse_bool(root_args["test_mode"], "test_mode")
    if "num_workers" in root_args:
        root_args["num_workers"] = int(root_args["num_workers"])

    settings = AppSettings(
        k8s=k8s_obj,
        runtime=runtime_obj,
        node=node_obj,
        **root_args
    )
    return validate_settings(settings)
