from nornir.core.task import Task, Result

from kubestrap.core.models import TaskStatus, StandardResult, SubTaskResult


def fail(task: Task, sub_res: SubTaskResult) -> Result:
    """
    Helper to return a failed Result from a SubTaskResult.
    """
    return Result(
        host=task.host,
        failed=True,
        result=StandardResult(TaskStatus.FAILED, sub_res.message)
    )


def skipped(task: Task, message: str) -> Result:
    return Result(
        host=task.host,
        result=StandardResult(TaskStatus.SKIPPED, message)
    )


def app_config(task: Task) -> dict:
    """Settings injected by the engine into the inventory defaults."""
    config = task.host.get("app_config")
    if not config:
        raise KeyError("Missing 'app_config' in inventory data")
    return config


__all__ = [
    "fail",
    "skipped",
    "app_config",
]
