import base64
import re
import shlex
from collections import defaultdict, namedtuple

import pytest
from nornir.core import Nornir
from nornir.core.inventory import Inventory, Host, Hosts, Group, Groups, Defaults, ParentGroups
from nornir.core.task import Result
from nornir.plugins.runners import SerialRunner

from kubestrap.core.engine import PlaybookEngine
from kubestrap.core.settings import AppSettings
from kubestrap.core.state import config as global_config
from kubestrap.utils import linux

OS_RELEASE = """NAME="Ubuntu"
VERSION_ID="22.04"
VERSION_CODENAME=jammy
ID=ubuntu
ID_LIKE=debian
"""

Call = namedtuple("Call", "host command sudo")


class FakeShell:
    """
    Stands in for local command execution.
    Commands are recorded; answers come from rules (latest first), then from a
    tiny per-host filesystem (test/cat/write_file staging), then default to rc=0.
    """

    def __init__(self):
        self.calls = []
        self.rules = []
        self.files = defaultdict(dict)

    def on(self, pattern, output="", rc=0, host=None):
        self.rules.insert(0, (host, re.compile(pattern), output, rc))
        return self

    def ran(self, pattern, host=None):
        return self.count(pattern, host) > 0

    def count(self, pattern, host=None):
        regex = re.compile(pattern)
        return len([c for c in self.calls if regex.search(c.command) and host in (None, c.host)])

    def _result(self, task, output="", rc=0):
        return Result(
            host=task.host,
            result=output,
            failed=rc != 0,
            stdout=output,
            stderr=output if rc else "",
        )

    def _filesystem(self, task, command):
        files = self.files[task.host.name]

        m = re.match(r"^test -f (\S+)$", command)
        if m:
            return self._result(task, rc=0 if m.group(1) in files else 1)

        m = re.match(r"^cat (\S+)$", command)
        if m:
            if m.group(1) not in files:
                return self._result(task, f"cat: {m.group(1)}: No such file or directory", rc=1)
            return self._result(task, files[m.group(1)])

        m = re.match(r"^: > (\S+)$", command)
        if m:
            files[m.group(1)] = ""
            return self._result(task)

        m = re.match(r"^printf '%s' '([A-Za-z0-9+/=]*)' >> (\S+)$", command)
        if m:
            files[m.group(2)] = files.get(m.group(2), "") + m.group(1)
            return self._result(task)

        m = re.match(r"^base64 -d (\S+) > (\S+) && rm -f \S+$", command)
        if m:
            files[m.group(2)] = base64.b64decode(files.pop(m.group(1))).decode("utf-8")
            return self._result(task)

        m = re.match(r"^mkdir -p \S+ && mv (\S+) (\S+)$", command)
        if m:
            files[m.group(2)] = files.pop(m.group(1))
            return self._result(task)

        m = re.match(r"^rm -f (\S+)$", command)
        if m:
            files.pop(m.group(1), None)
            return self._result(task)

        return None

    def __call__(self, task, command, timeout=None):
        sudo = command.startswith("sudo -n sh -c ")
        if sudo:
            command = shlex.split(command)[4]
        self.calls.append(Call(task.host.name, command, sudo))

        for host, regex, output, rc in self.rules:
            if host in (None, task.host.name) and regex.search(command):
                return self._result(task, output, rc)

        result = self._filesystem(task, command)
        return result if result is not None else self._result(task)


@pytest.fixture
def shell(monkeypatch):
    fake = FakeShell()
    monkeypatch.setattr(linux, "_run_local_subprocess", fake)
    return fake


@pytest.fixture(autouse=True)
def quiet_mode():
    global_config.VERBOSE = False
    yield


def build_nornir(control_planes=("cp-01",), workers=("worker-01", "worker-02")):
    defaults = Defaults()
    groups = Groups({
        name: Group(name, defaults=defaults) for name in ("k8s_control_plane", "k8s_worker")
    })
    hosts = Hosts()
    for index, name in enumerate(list(control_planes) + list(workers)):
        group = "k8s_control_plane" if name in control_planes else "k8s_worker"
        hosts[name] = Host(
            name,
            hostname=f"10.10.0.{10 + index}",
            username="ubuntu",
            platform="linux_local",
            groups=ParentGroups([groups[group]]),
            defaults=defaults,
        )
    inventory = Inventory(hosts=hosts, groups=groups, defaults=defaults)
    return Nornir(inventory=inventory, runner=SerialRunner())


@pytest.fixture
def make_engine():
    def _make(settings=None, **kwargs):
        return PlaybookEngine(settings or AppSettings(), nr=build_nornir(**kwargs))
    return _make


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def ubuntu(shell):
    """Every host answers like an Ubuntu 22.04 amd64 box."""
    shell.on(r"^cat /etc/os-release$", OS_RELEASE)
    shell.on(r"^dpkg --print-architecture$", "amd64\n")
    return shell


@pytest.fixture
def run_step():
    def _run(engine, task, host):
        """Runs one step on one host, returns its Result."""
        return engine.nr.filter(name=host).run(task=task, on_failed=True)[host][0]
    return _run
