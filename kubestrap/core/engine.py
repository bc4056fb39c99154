import dataclasses
from typing import Optional

from nornir.core import Nornir
from nornir.core.task import AggregatedResult
from rich.panel import Panel

from kubestrap.core.models import TaskStatus, StandardResult, JoinCredential
from kubestrap.core.registry import PLAYBOOKS
from kubestrap.core.settings import AppSettings
from kubestrap.inventory import build_nornir, cluster_node_names, in_groups, validate_inventory
from kubestrap.tasks.k8s_join import JOIN_CREDENTIAL_KEY, parse_join_command
from kubestrap.utils.logger import console, sys_logger


class PlaybookEngine:
    """
    Runs the plays of a goal in order.
    Inside a play each step fans out over the play's hosts; the next step
    starts only when every host finished the previous one.
    """

    def __init__(self, settings: AppSettings, nr: Optional[Nornir] = None):
        self.settings = settings
        self.nr = nr if nr is not None else build_nornir(settings)
        self._initialize()

    def _initialize(self):
        """Injects configuration and run-wide data into the inventory defaults."""
        validate_inventory(self.nr)
        self.shared_data["app_config"] = dataclasses.asdict(self.settings)
        self.shared_data["cluster_nodes"] = cluster_node_names(self.nr)

    @property
    def shared_data(self) -> dict:
        return self.nr.inventory.defaults.data

    @property
    def join_credential(self) -> Optional[JoinCredential]:
        stored = self.shared_data.get(JOIN_CREDENTIAL_KEY)
        return JoinCredential(**stored) if stored else None

    def seed_join_command(self, command: str):
        """Uses a join command issued earlier (worker-only runs)."""
        self.shared_data[JOIN_CREDENTIAL_KEY] = dataclasses.asdict(parse_join_command(command))

    def run(self, goal: str, target_filter: Optional[str] = None) -> bool:
        """
        Executes the plays of the specified goal.
        Returns False as soon as a step fails on any host.
        """
        if goal not in PLAYBOOKS:
            raise KeyError(f"Goal '{goal}' not defined in Registry")

        console.print(Panel.fit(f"[bold blue]🚀 Starting Goal: {goal}[/bold blue]", border_style="blue"))
        sys_logger.info(f"GOAL START goal='{goal}' target='{target_filter or '*'}'")

        for groups, tasks in PLAYBOOKS[goal]:
            play_hosts = self.nr.filter(filter_func=lambda h: in_groups(h, groups))
            if target_filter:
                play_hosts = play_hosts.filter(name=target_filter)

            host_count = len(play_hosts.inventory.hosts)
            if host_count == 0:
                continue

            console.print(f"\n[bold cyan]Targeting:[/bold cyan] {', '.join(groups)} ({host_count} hosts)")

            for task_func in tasks:
                task_name = task_func.__name__
                console.print(f"  🔸 Running: [bold]{task_name}[/bold]")

                # on_failed: handled command errors also flag hosts as failed in nornir
                agg_result = play_hosts.run(task=task_func, name=task_name, on_failed=True)

                if self._handle_results(agg_result):
                    console.print(
                        f"\n[bold red]⛔ Execution halted due to critical failure in {task_name}.[/bold red]")
                    sys_logger.error(f"GOAL HALTED goal='{goal}' task='{task_name}'")
                    return False

        sys_logger.info(f"GOAL END goal='{goal}'")
        return True

    def _handle_results(self, agg_result: AggregatedResult) -> bool:
        """
        Prints status per host and decides whether to stop the engine.
        Returns True if execution should stop (Critical Failure).
        """
        has_critical_failure = False

        for host, multi_res in sorted(agg_result.items()):
            # multi_res[0] is the step itself, nested command runs follow it
            task_result = multi_res[0]
            payload = task_result.result

            # Fallback if the task did not return a StandardResult (e.g. nornir-level error)
            if not isinstance(payload, StandardResult):
                status = TaskStatus.FAILED if task_result.failed else TaskStatus.OK
                msg = str(payload)
            else:
                status = payload.status
                msg = payload.message
                if task_result.failed:
                    status = TaskStatus.FAILED

            if status == TaskStatus.OK:
                console.print(f"    ✅ [bold green]{host}[/bold green]: {msg}")

            elif status == TaskStatus.CHANGED:
                console.print(f"    ✨ [bold yellow]{host}[/bold yellow]: {msg}")

            elif status == TaskStatus.WARNING:
                console.print(f"    ⚠️ [bold orange3]{host}[/bold orange3]: {msg}")

            elif status == TaskStatus.SKIPPED:
                console.print(f"    ⏭  [bold cyan]{host}[/bold cyan]: {msg}")

            elif status == TaskStatus.FAILED:
                console.print(f"    ❌ [bold red]{host}[/bold red]: {msg}")
                has_critical_failure = True

        return has_critical_failure
