from typing import Callable, Dict, List, Any, Tuple

from kubestrap.inventory import CONTROL_PLANE_GROUP, WORKER_GROUP, CLUSTER_GROUPS
from kubestrap.tasks.cluster_verification import verify_cluster_nodes
from kubestrap.tasks.cri_containerd_setup import install_containerd
from kubestrap.tasks.k8s_control_plane_init import init_control_plane
from kubestrap.tasks.k8s_join import create_join_credential, join_cluster
from kubestrap.tasks.k8s_node_preparation import disable_firewall, disable_swap, prepare_k8s_node
from kubestrap.tasks.k8s_tools_installation import install_kubernetes_tools
from kubestrap.tasks.network_connectivity import check_internet_access
from kubestrap.tasks.os_facts_gathering import gather_system_facts
from kubestrap.tasks.pod_network import install_pod_network

TaskChain = List[Callable[..., Any]]

# A play runs its task chain, in order, on every host of its groups
Play = Tuple[Tuple[str, ...], TaskChain]

CONTROL_PLANE = (CONTROL_PLANE_GROUP,)
WORKERS = (WORKER_GROUP,)
ALL_NODES = CLUSTER_GROUPS

PLAYBOOKS: Dict[str, List[Play]] = {

    # --- STAGE 1: OS configuration ---
    "OS": [
        (ALL_NODES, [
            gather_system_facts,
            disable_firewall,
            disable_swap,
            prepare_k8s_node,
        ]),
    ],

    # --- STAGE 2: Container runtime ---
    "RUNTIME": [
        (ALL_NODES, [
            gather_system_facts,
            check_internet_access,
            install_containerd,
        ]),
    ],

    # --- STAGE 3: Cluster bootstrap ---
    "CLUSTER": [
        (ALL_NODES, [
            gather_system_facts,
            install_kubernetes_tools,
        ]),
        (CONTROL_PLANE, [
            init_control_plane,
            create_join_credential,
        ]),
        (WORKERS, [
            join_cluster,
        ]),
        (CONTROL_PLANE, [
            install_pod_network,
        ]),
    ],

    # --- Utilities ---
    "JOIN": [
        (CONTROL_PLANE, [create_join_credential]),
    ],
    "VERIFY": [
        (CONTROL_PLANE, [verify_cluster_nodes]),
    ],
}

STAGE_SEQUENCE = ["OS", "RUNTIME", "CLUSTER"]
