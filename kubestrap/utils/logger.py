import logging
from pathlib import Path

from rich.console import Console
from rich.theme import Theme

LOG_FORMAT = "%(asctime)s %(levelname)s %(message)s"

custom_theme = Theme({
    "success": "bold green",
    "error": "bold red",
    "skip": "bold cyan",
    "warning": "bold yellow",
    "info": "dim white"
})

console = Console(theme=custom_theme)

# File logger: every step start/end and every crash (with traceback) lands here.
sys_logger = logging.getLogger("kubestrap")
sys_logger.setLevel(logging.DEBUG)
sys_logger.addHandler(logging.NullHandler())


def setup_file_logging(log_file: str, level: int = logging.INFO) -> logging.Handler:
    """
    Attaches a file handler to sys_logger.
    Creates the log directory if needed. Calling it twice for the same
    file does not duplicate the handler.
    """
    path = Path(log_file).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)

    for handler in sys_logger.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == path.absolute():
            handler.setLevel(level)
            return handler

    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    sys_logger.addHandler(handler)
    return handler


def log_step(status: str, msg: str, indent: int = 0):
    """Prints one themed status line on the console."""
    icons = {
        "success": "✅",
        "error": "❌",
        "skip": "⏭",
        "warning": "⚠️",
        "info": "ℹ️"
    }
    icon = icons.get(status, "•")
    console.print(f"{'   ' * indent}{icon} [{status}]{msg}[/{status}]")
