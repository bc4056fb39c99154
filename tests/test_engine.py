import pytest

from kubestrap.core.models import TaskStatus
from kubestrap.core.registry import PLAYBOOKS, STAGE_SEQUENCE, CONTROL_PLANE, WORKERS, ALL_NODES
from kubestrap.core.settings import AppSettings


TOKEN = "abcdef.0123456789abcdef"
CA_HASH = "sha256:" + "ab" * 32
JOIN_OUTPUT = f"kubeadm join 10.10.0.10:6443 --token {TOKEN} --discovery-token-ca-cert-hash {CA_HASH}\n"

CENTOS_RELEASE = """NAME="CentOS Stream"
VERSION_ID="9"
ID="centos"
"""


def _step_names(goal):
    return [(groups, [step.__name__ for step in steps]) for groups, steps in PLAYBOOKS[goal]]


def test_stage_sequence():
    assert STAGE_SEQUENCE == ["OS", "RUNTIME", "CLUSTER"]
    assert all(goal in PLAYBOOKS for goal in STAGE_SEQUENCE)


def test_cluster_play_order():
    assert _step_names("CLUSTER") == [
        (ALL_NODES, ["gather_system_facts", "install_kubernetes_tools"]),
        (CONTROL_PLANE, ["init_control_plane", "create_join_credential"]),
        (WORKERS, ["join_cluster"]),
        (CONTROL_PLANE, ["install_pod_network"]),
    ]


def test_shared_data_is_injected(engine):
    host = engine.nr.inventory.hosts["worker-02"]

    assert host.get("cluster_nodes") == ["cp-01", "worker-01", "worker-02"]
    assert host.get("app_config")["k8s"]["version"] == "1.29"
    assert host.get("app_config")["node"]["kernel_modules"] == ["overlay", "br_netfilter"]


def test_unknown_goal(engine):
    with pytest.raises(KeyError):
        engine.run("UPGRADE")


def test_os_goal(ubuntu, engine):
    shell = ubuntu
    for host in ("cp-01", "worker-01", "worker-02"):
        shell.files[host]["/etc/fstab"] = "UUID=1 / ext4 defaults 0 1\n"

    assert engine.run("OS") is True
    for host in ("cp-01", "worker-01", "worker-02"):
        assert shell.ran(r"^sysctl --system$", host=host)
        assert engine.nr.inventory.hosts[host]["os_facts"]["codename"] == "jammy"


def test_failure_halts_the_goal(ubuntu, engine):
    shell = ubuntu
    shell.on(r"^cat /etc/os-release$", CENTOS_RELEASE, host="worker-02")

    assert engine.run("OS") is False
    # facts ran everywhere, nothing after them did
    assert shell.ran(r"^cat /etc/os-release$", host="cp-01")
    assert not shell.ran(r"ufw|swap|modules|sysctl")


def test_crashing_step_is_a_failure(shell, engine, monkeypatch):
    from kubestrap.core import engine as engine_module

    def boom(task):
        raise RuntimeError("boom")

    monkeypatch.setitem(engine_module.PLAYBOOKS, "BOOM", [(ALL_NODES, [boom])])

    assert engine.run("BOOM") is False


def test_target_filter(ubuntu, make_engine):
    shell = ubuntu
    engine = make_engine(AppSettings(test_mode=True))

    assert engine.run("OS", target_filter="worker-01") is True
    assert {call.host for call in shell.calls} == {"worker-01"}


def test_unknown_target_runs_nothing(shell, engine):
    assert engine.run("OS", target_filter="nope") is True
    assert shell.calls == []


def test_test_mode_skips_firewall_and_swap(ubuntu, make_engine):
    shell = ubuntu
    engine = make_engine(AppSettings(test_mode=True))

    assert engine.run("OS") is True
    assert not shell.ran(r"ufw|swapoff|/proc/swaps|/etc/fstab")
    assert shell.ran(r"^sysctl --system$")


def test_cluster_goal(ubuntu, engine):
    shell = ubuntu
    shell.on(r"^kubeadm token create", JOIN_OUTPUT)
    shell.on(r"apply -f https://", "daemonset.apps/calico-node created\n")

    assert engine.run("CLUSTER") is True

    commands = [(call.host, call.command) for call in shell.calls]
    init = commands.index(("cp-01", "kubeadm init --config /tmp/kubeadm-config.yaml --upload-certs"))
    joins = [i for i, (host, cmd) in enumerate(commands) if cmd.startswith("kubeadm join")]
    calico = [i for i, (host, cmd) in enumerate(commands) if "apply -f" in cmd]

    assert [commands[i][0] for i in joins] == ["worker-01", "worker-02"]
    assert init < min(joins)
    assert calico and calico[0] > max(joins)
    assert all(commands[i][1].endswith(f"--node-name {commands[i][0]}") for i in joins)


def test_worker_only_run_with_seeded_command(shell, ubuntu, engine):
    engine.seed_join_command(JOIN_OUTPUT)

    assert engine.run("CLUSTER", target_filter="worker-02") is True
    assert not shell.ran(r"^kubeadm (init|token)")
    assert shell.ran(r"^kubeadm join .* --node-name worker-02$", host="worker-02")


def test_worker_only_run_without_credential_fails(ubuntu, engine):
    shell = ubuntu

    assert engine.run("CLUSTER", target_filter="worker-02") is False
    assert not shell.ran(r"^kubeadm join")


def test_seed_join_command_rejects_garbage(engine):
    with pytest.raises(ValueError):
        engine.seed_join_command("kubeadm join")
    assert engine.join_credential is None


def test_join_goal(shell, engine):
    shell.on(r"^kubeadm token create", JOIN_OUTPUT)

    assert engine.run("JOIN") is True
    assert engine.join_credential.command == JOIN_OUTPUT.strip()
    assert {call.host for call in shell.calls} == {"cp-01"}


def test_status_rendering(engine):
    from nornir.core.task import Result
    from kubestrap.core.models import StandardResult

    def warn(task):
        return Result(host=task.host, result=StandardResult(TaskStatus.WARNING, "slow disk"))

    agg = engine.nr.run(task=warn)

    assert engine._handle_results(agg) is False


def test_step_returning_bare_standard_result(shell, engine, monkeypatch):
    from kubestrap.core import engine as engine_module
    from kubestrap.core.decorators import automated_step
    from kubestrap.core.models import StandardResult

    @automated_step("Refuse")
    def refuse(task):
        return StandardResult(TaskStatus.FAILED, "refused")

    monkeypatch.setitem(engine_module.PLAYBOOKS, "REFUSE", [(CONTROL_PLANE, [refuse])])

    assert engine.run("REFUSE") is False


def test_second_control_plane_is_rejected(make_engine):
    with pytest.raises(ValueError, match="Exactly one host"):
        make_engine(control_planes=("cp-01", "cp-02"))
