import pytest
from typer.testing import CliRunner

from kubestrap import main
from kubestrap.core.models import JoinCredential

runner = CliRunner()

CREDENTIAL = JoinCredential("10.10.0.10:6443", "abcdef.0123456789abcdef", "sha256:" + "cd" * 32)


class RecordingEngine:
    """Stands in for PlaybookEngine, records the goals it is asked to run."""
    runs = []
    failing = set()
    seeded = []

    def __init__(self, settings):
        self.settings = settings
        self.join_credential = CREDENTIAL

    def run(self, goal, target_filter=None):
        self.runs.append((goal, target_filter, self.settings.inventory_dir))
        return goal not in self.failing

    def seed_join_command(self, command):
        self.seeded.append(command)


@pytest.fixture
def engine_cls(monkeypatch, tmp_path):
    monkeypatch.setenv("KUBESTRAP_LOG_FILE", str(tmp_path / "logs" / "kubestrap.log"))
    monkeypatch.setattr(RecordingEngine, "runs", [])
    monkeypatch.setattr(RecordingEngine, "failing", set())
    monkeypatch.setattr(RecordingEngine, "seeded", [])
    monkeypatch.setattr(main, "PlaybookEngine", RecordingEngine)
    return RecordingEngine


def _invoke(tmp_path, *args):
    config = tmp_path / "cluster_config.yaml"
    if not config.exists():
        config.write_text("# defaults only\n")
    return runner.invoke(main.app, ["--config", str(config), *args])


def test_help():
    result = runner.invoke(main.app, ["--help"])

    assert result.exit_code == 0
    for command in ("prepare-os", "install-runtime", "bootstrap-cluster", "all", "join-command", "verify"):
        assert command in result.output


def test_all_runs_stages_in_order(engine_cls, tmp_path):
    result = _invoke(tmp_path, "all", "--target", "worker-01")

    assert result.exit_code == 0
    assert [(goal, target) for goal, target, _ in engine_cls.runs] == [
        ("OS", "worker-01"), ("RUNTIME", "worker-01"), ("CLUSTER", "worker-01"),
    ]


def test_all_stops_at_failed_stage(engine_cls, tmp_path):
    engine_cls.failing.add("RUNTIME")

    result = _invoke(tmp_path, "all")

    assert result.exit_code == 1
    assert [goal for goal, _, _ in engine_cls.runs] == ["OS", "RUNTIME"]


def test_inventory_option(engine_cls, tmp_path):
    result = _invoke(tmp_path, "--inventory", str(tmp_path), "prepare-os")

    assert result.exit_code == 0
    assert engine_cls.runs == [("OS", None, str(tmp_path))]


def test_bootstrap_seeds_join_command(engine_cls, tmp_path):
    result = _invoke(tmp_path, "bootstrap-cluster", "--join-command", CREDENTIAL.command)

    assert result.exit_code == 0
    assert engine_cls.seeded == [CREDENTIAL.command]
    assert engine_cls.runs[0][0] == "CLUSTER"


def test_join_command_prints_command(engine_cls, tmp_path):
    result = _invoke(tmp_path, "join-command")

    assert result.exit_code == 0
    assert result.output.strip().endswith(CREDENTIAL.command)
    assert engine_cls.runs[0][0] == "JOIN"


def test_verify_failure_exit_code(engine_cls, tmp_path):
    engine_cls.failing.add("VERIFY")

    assert _invoke(tmp_path, "verify").exit_code == 1


def test_invalid_config(engine_cls, tmp_path):
    config = tmp_path / "cluster_config.yaml"
    config.write_text("k8s:\n  version: latest\n")

    result = runner.invoke(main.app, ["--config", str(config), "prepare-os"])

    assert result.exit_code == 1
    assert "Invalid Kubernetes version" in result.output
    assert engine_cls.runs == []


def test_missing_inventory(monkeypatch, tmp_path):
    monkeypatch.setenv("KUBESTRAP_LOG_FILE", str(tmp_path / "kubestrap.log"))

    result = _invoke(tmp_path, "--inventory", str(tmp_path), "install-runtime")

    assert result.exit_code == 1
    assert "Inventory not found" in result.output


def test_config_option_must_exist(engine_cls, tmp_path):
    result = runner.invoke(main.app, ["--config", str(tmp_path / "missing.yaml"), "verify"])

    assert result.exit_code == 2
    assert engine_cls.runs == []


@pytest.mark.parametrize("content", ["k8s: [unclosed\n", "runtime:\n  - containerd.io\n"])
def test_broken_config_is_reported(engine_cls, tmp_path, content):
    config = tmp_path / "cluster_config.yaml"
    config.write_text(content)

    result = runner.invoke(main.app, ["--config", str(config), "verify"])

    assert result.exit_code == 1
    assert "Init Error" in result.output
    assert not isinstance(result.exception, (TypeError, AttributeError))
    assert engine_cls.runs == []


def test_empty_section_uses_defaults(engine_cls, tmp_path):
    config = tmp_path / "cluster_config.yaml"
    config.write_text("k8s:\n")

    result = runner.invoke(main.app, ["--config", str(config), "verify"])

    assert result.exit_code == 0
    assert engine_cls.runs[0][0] == "VERIFY"
