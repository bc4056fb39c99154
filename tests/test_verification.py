from kubestrap.core.models import TaskStatus
from kubestrap.tasks.cluster_verification import is_ready, parse_node_status, verify_cluster_nodes

GET_NODES = r"^kubectl --kubeconfig /etc/kubernetes/admin\.conf get nodes --no-headers$"


def test_parse_node_status():
    output = (
        "cp-01       Ready                      control-plane   10m   v1.29.3\n"
        "worker-01   NotReady                   <none>          2m    v1.29.3\n"
        "\n"
    )

    assert parse_node_status(output) == {"cp-01": "Ready", "worker-01": "NotReady"}


def test_is_ready():
    assert is_ready("Ready")
    assert is_ready("Ready,SchedulingDisabled")
    assert not is_ready("NotReady")
    assert not is_ready("Unknown")


def test_all_nodes_ready(shell, engine, run_step):
    shell.on(GET_NODES, (
        "cp-01       Ready   control-plane   10m   v1.29.3\n"
        "worker-01   Ready   <none>          5m    v1.29.3\n"
        "worker-02   Ready   <none>          5m    v1.29.3\n"
    ))

    res = run_step(engine, verify_cluster_nodes, "cp-01")

    assert res.result.status == TaskStatus.OK
    assert res.result.message == "All 3 nodes Ready"


def test_missing_and_not_ready(shell, engine, run_step):
    shell.on(GET_NODES, (
        "cp-01       Ready      control-plane   10m   v1.29.3\n"
        "worker-01   NotReady   <none>          1m    v1.29.3\n"
    ))

    res = run_step(engine, verify_cluster_nodes, "cp-01")

    assert res.failed
    assert res.result.message == "missing: worker-02; not ready: worker-01"


def test_verify_goal_fails_when_kubectl_fails(shell, engine):
    shell.on(GET_NODES, "The connection to the server 10.10.0.10:6443 was refused", rc=1)

    assert engine.run("VERIFY") is False
    assert shell.ran(GET_NODES, host="cp-01")
    assert not shell.ran(GET_NODES, host="worker-01")
