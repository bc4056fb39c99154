from pathlib import Path
from typing import List

from nornir import InitNornir
from nornir.core import Nornir
from nornir.core.inventory import ConnectionOptions, Host

from kubestrap.core.settings import AppSettings

CONTROL_PLANE_GROUP = "k8s_control_plane"
WORKER_GROUP = "k8s_worker"
CLUSTER_GROUPS = (CONTROL_PLANE_GROUP, WORKER_GROUP)

DEFAULT_PLATFORM = "linux"


def in_groups(host: Host, groups) -> bool:
    return any(host.has_parent_group(group) for group in groups)


def build_nornir(settings: AppSettings) -> Nornir:
    """
    Loads the SimpleInventory found in settings.inventory_dir:
    hosts.yaml (required), groups.yaml and defaults.yaml (optional).
    """
    inventory_dir = Path(settings.inventory_dir)
    host_file = inventory_dir / "hosts.yaml"
    if not host_file.exists():
        raise FileNotFoundError(f"Inventory not found: {host_file}")

    nr = InitNornir(
        runner={
            "plugin": "threaded",
            "options": {"num_workers": settings.num_workers},
        },
        inventory={
            "plugin": "SimpleInventory",
            "options": {
                "host_file": str(host_file),
                "group_file": str(inventory_dir / "groups.yaml"),
                "defaults_file": str(inventory_dir / "defaults.yaml"),
            },
        },
        logging={"enabled": False},
    )

    apply_ssh_keys(nr)
    validate_inventory(nr)
    return nr


def apply_ssh_keys(nr: Nornir) -> None:
    """
    Maps each host's 'ssh_key' data to scrapli connection options.
    """
    for host in nr.inventory.hosts.values():
        if not host.platform:
            host.platform = DEFAULT_PLATFORM

        key = host.get("ssh_key")
        if not key:
            continue

        extras = {
            "auth_private_key": str(Path(key).expanduser()),
            "auth_strict_key": False,
        }
        existing = host.connection_options.get("scrapli")
        if existing:
            existing.extras = {**extras, **(existing.extras or {})}
        else:
            host.connection_options["scrapli"] = ConnectionOptions(extras=extras)


def validate_inventory(nr: Nornir) -> None:
    hosts = nr.inventory.hosts.values()
    control_planes = [h.name for h in hosts if h.has_parent_group(CONTROL_PLANE_GROUP)]
    if not control_planes:
        raise ValueError(f"Inventory has no host in group '{CONTROL_PLANE_GROUP}'")
    # every control-plane host would run its own kubeadm init
    if len(control_planes) > 1:
        raise ValueError(
            f"Exactly one host allowed in group '{CONTROL_PLANE_GROUP}', found: {', '.join(control_planes)}"
        )

    both = [h.name for h in hosts if h.has_parent_group(CONTROL_PLANE_GROUP) and h.has_parent_group(WORKER_GROUP)]
    if both:
        raise ValueError(f"Hosts cannot be both control plane and worker: {', '.join(both)}")


def cluster_node_names(nr: Nornir) -> List[str]:
    return sorted(name for name, host in nr.inventory.hosts.items() if in_groups(host, CLUSTER_GROUPS))
