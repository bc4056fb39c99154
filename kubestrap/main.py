import logging
from pathlib import Path
from typing import Optional

import typer
from rich import print as rprint
from rich.markup import escape
from rich.panel import Panel

from kubestrap import __version__
from kubestrap.core.engine import PlaybookEngine
from kubestrap.core.registry import STAGE_SEQUENCE
from kubestrap.core.settings import load_settings
from kubestrap.core.state import config as global_config
from kubestrap.utils.logger import log_step, setup_file_logging, sys_logger

app = typer.Typer(
    help="kubestrap - Ubuntu hosts to a kubeadm Kubernetes cluster",
    add_completion=True,
    no_args_is_help=True
)

TARGET_OPTION = typer.Option(
    None, "--target", "-t",
    help="Limit execution to a single inventory host."
)


@app.callback()
def main(
        ctx: typer.Context,
        verbose: bool = typer.Option(
            False, "--verbose", "-v",
            help="Show every sub-step and log debug details."
        ),
        config_file: Optional[Path] = typer.Option(
            None, "--config", "-c",
            help="Path to the configuration YAML file (default: cluster_config.yaml if present).",
            exists=True,
            dir_okay=False
        ),
        inventory_dir: Optional[Path] = typer.Option(
            None, "--inventory", "-i",
            help="Inventory directory (hosts.yaml, groups.yaml, defaults.yaml).",
            file_okay=False
        )
):
    """
    kubestrap CLI.
    Common entry point for all commands.
    """
    global_config.VERBOSE = verbose
    global_config.CONFIG_FILE = str(config_file) if config_file else "cluster_config.yaml"
    global_config.INVENTORY_DIR = str(inventory_dir) if inventory_dir else None

    if ctx.invoked_subcommand:
        mode = "Verbose Mode" if verbose else "Quiet Mode"
        rprint(Panel.fit(
            "[bold white]kubestrap[/bold white]",
            border_style="blue",
            subtitle=f"v{__version__} ({mode})"
        ))


def _build_engine() -> PlaybookEngine:
    """Loads settings + inventory, exits with code 1 on configuration errors."""
    try:
        settings = load_settings(global_config.CONFIG_FILE)
        if global_config.INVENTORY_DIR:
            settings.inventory_dir = global_config.INVENTORY_DIR

        setup_file_logging(settings.log_file, logging.DEBUG if global_config.VERBOSE else logging.INFO)
        return PlaybookEngine(settings)
    except (ValueError, OSError) as e:
        sys_logger.error(f"Init Error: {e}")
        log_step("error", f"Init Error: {escape(str(e))}")
        raise typer.Exit(code=1)


def _run_goals(engine: PlaybookEngine, goals, target: Optional[str]):
    for goal in goals:
        if not engine.run(goal, target_filter=target):
            raise typer.Exit(code=1)


@app.command(name="prepare-os")
def prepare_os(target: Optional[str] = TARGET_OPTION):
    """
    [Stage 1] Disables swap/firewall, loads kernel modules, sets sysctl.
    """
    _run_goals(_build_engine(), ["OS"], target)


@app.command(name="install-runtime")
def install_runtime(target: Optional[str] = TARGET_OPTION):
    """
    [Stage 2] Installs and configures containerd.
    """
    _run_goals(_build_engine(), ["RUNTIME"], target)


@app.command(name="bootstrap-cluster")
def bootstrap_cluster(
        target: Optional[str] = TARGET_OPTION,
        join_command: Optional[str] = typer.Option(
            None, "--join-command",
            help="Join command issued earlier, used when the control plane is not part of this run."
        )
):
    """
    [Stage 3] Installs kube tools, initializes the control plane, joins workers, installs Calico.
    """
    engine = _build_engine()
    if join_command:
        try:
            engine.seed_join_command(join_command)
        except ValueError as e:
            log_step("error", escape(str(e)))
            raise typer.Exit(code=1)
    _run_goals(engine, ["CLUSTER"], target)


@app.command(name="all")
def run_all(target: Optional[str] = TARGET_OPTION):
    """
    [Idempotent] Runs stages 1, 2 and 3 in sequence, stopping at the first failure.
    """
    _run_goals(_build_engine(), STAGE_SEQUENCE, target)


@app.command(name="join-command")
def join_command():
    """
    Issues a new join token on the control plane and prints the join command.
    """
    engine = _build_engine()
    _run_goals(engine, ["JOIN"], None)

    credential = engine.join_credential
    if credential is None:
        raise typer.Exit(code=1)
    typer.echo(credential.command)


@app.command()
def verify():
    """
    Checks from the control plane that every inventory host is Ready.
    """
    _run_goals(_build_engine(), ["VERIFY"], None)


if __name__ == "__main__":
    app()
