"""Rich console logging for the planner, plus an optional debug log file."""

from __future__ import annotations

import logging
from pathlib import Path

from rich.console import Console

stderr_console = Console(stderr=True)

# Chatty third-party loggers: the SQL engine and the HTTP layer of the SDK.
QUIET_LOGGERS = ("sqlalchemy.engine", "httpx", "anthropic")

FILE_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"


def setup_logging(level: str = "info", log_file: Path | None = None) -> logging.Logger:
    """Route portion_planner logs to stderr through Rich.

    With ``log_file`` set, everything down to DEBUG also lands in the file,
    which is where per-call AI replies end up. Third-party loggers stay at
    WARNING unless ``level`` is debug.
    """
    from rich.logging import RichHandler

    console_level = getattr(logging, level.upper(), logging.INFO)

    root = logging.getLogger("portion_planner")
    root.setLevel(logging.DEBUG if log_file is not None else console_level)
    root.handlers.clear()

    console = RichHandler(
        console=stderr_console,
        show_path=False,
        markup=False,
        rich_tracebacks=True,
    )
    console.setLevel(console_level)
    root.addHandler(console)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(FILE_FORMAT))
        root.addHandler(handler)

    third_party_level = logging.DEBUG if console_level <= logging.DEBUG else logging.WARNING
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(third_party_level)

    return root
