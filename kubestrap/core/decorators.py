import time
from functools import wraps

from nornir.core.task import Task, Result

from kubestrap.core.models import TaskStatus, StandardResult, SubTaskResult
from kubestrap.core.state import config as global_config
from kubestrap.utils.logger import console, sys_logger


def _as_result(task: Task, value) -> Result:
    """Steps may hand back a bare StandardResult; nornir wants a Result."""
    if isinstance(value, Result):
        return value
    if isinstance(value, StandardResult):
        return Result(host=task.host, failed=value.status == TaskStatus.FAILED, result=value)
    return Result(host=task.host, result=value)


def automated_step(step_name: str):
    """
    Wraps a playbook step:
    logs start/end (with duration) to the file log, turns any exception
    into a FAILED result the PlaybookEngine can render.
    """

    def decorator(func):
        @wraps(func)
        def wrapper(task: Task, *args, **kwargs) -> Result:
            host_name = task.host.name
            started = time.monotonic()
            sys_logger.info(f"START task='{step_name}' host='{host_name}'")

            try:
                result = _as_result(task, func(task, *args, **kwargs))
            except Exception as e:
                sys_logger.error(
                    f"CRASH task='{step_name}' host='{host_name}': {e}", exc_info=True
                )
                return Result(
                    host=task.host,
                    failed=True,
                    exception=e,
                    result=StandardResult(TaskStatus.FAILED, f"System Error: {e}")
                )

            payload = result.result
            status = payload.status.value if isinstance(payload, StandardResult) else "UNKNOWN"
            sys_logger.info(
                f"END task='{step_name}' host='{host_name}' status='{status}' "
                f"elapsed={time.monotonic() - started:.1f}s"
            )
            return result

        return wrapper

    return decorator


def automated_substep(step_name: str):
    """
    Wraps an internal sub-step returning SubTaskResult.
    VERBOSE mode shows a spinner per host, replaced by a ✔/✖ line.
    """

    def decorator(func):
        @wraps(func)
        def wrapper(task: Task, *args, **kwargs) -> SubTaskResult:
            host_name = task.host.name
            label = f"{host_name}: {step_name}"
            sys_logger.info(f"[{host_name}] SUB-START '{step_name}'")

            try:
                if global_config.VERBOSE:
                    with console.status(f"    [dim]🔹 {label}...[/dim]", spinner="dots"):
                        result = func(task, *args, **kwargs)
                else:
                    result = func(task, *args, **kwargs)
            except Exception as e:
                sys_logger.error(f"[{host_name}] SUB-CRASH '{step_name}': {e}", exc_info=True)
                if global_config.VERBOSE:
                    console.print(f"    [bold red]💥 CRASH {label}[/bold red]: {e}")
                return SubTaskResult(success=False, message=f"Exception in '{step_name}': {e}", exception=e)

            changed = " changed" if result.changed else ""
            if result.success:
                sys_logger.info(f"[{host_name}] SUB-END '{step_name}' -> OK{changed} ({result.message})")
                if global_config.VERBOSE:
                    console.print(f"    [green]✔[/green] [dim]{label}{changed}[/dim]")
            else:
                sys_logger.warning(f"[{host_name}] SUB-END '{step_name}' -> FAIL ({result.message})")
                if global_config.VERBOSE:
                    console.print(f"    [red]✖ {label}[/red]: [dim]{result.message}[/dim]")

            return result

        return wrapper

    return decorator
