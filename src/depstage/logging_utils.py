"""Logging setup for the command line."""

from __future__ import annotations

from loguru import logger
from rich.console import Console
from rich.logging import RichHandler

LogFilter = dict[str | None, str | int | bool]


def parse_log_filter(raw: str) -> tuple[str, LogFilter]:
    """Parse a log filter such as ``DEPSTAGE_LOG_FILTER``.

    Format: "level" or "level,module=level,..."
    Examples:
        - "info" - global INFO level
        - "debug,depstage.eval=debug" - global DEBUG, depstage.eval at DEBUG
        - "info,depstage.cluster=false" - global INFO, depstage.cluster disabled

    Returns:
        (global_level, module_filter_dict)
    """
    parts = [p.strip() for p in raw.lower().split(",") if p.strip()]

    filter_dict: LogFilter = {}
    global_level = "warning"

    for part in parts:
        if "=" in part:
            module, level = part.split("=", 1)
            module = module.strip()
            level = level.strip()
            if level == "false":
                filter_dict[module] = False
            else:
                filter_dict[module] = level.upper()
        else:
            global_level = part

    return global_level, filter_dict


def configure_logging(log_filter: str, *, verbose: bool = False) -> None:
    """Send loguru records to stderr through rich.

    Records go to stderr so that ``--json`` output on stdout stays parseable.
    ``verbose`` lowers the global level to DEBUG; module overrides still apply.
    """
    global_level, module_filter = parse_log_filter(log_filter)
    if verbose:
        global_level = "debug"

    logger.remove()
    logger.add(
        RichHandler(
            console=Console(stderr=True),
            show_level=True,
            show_time=False,
            show_path=False,
            markup=False,
            rich_tracebacks=False,
        ),
        level=global_level.upper(),
        format="{name} | {message}",
        backtrace=False,
        diagnose=False,
        filter=module_filter,
    )
