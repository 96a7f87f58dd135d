"""Structured logging for playbook runs.

Console output (-v) goes to stderr through Rich; ``--log`` additionally writes
every event of the run to ``{project}/logs/debug.jsonl``. Both sinks render
the same structlog event dict, so the run context bound by the orchestrator
(run id, mode, seed) appears on each line without being passed explicitly.

Stage and service output never goes through these loggers; it lands in the
per-stage and per-service log files owned by the runner and service manager.
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path  # noqa: TC003 - Used at runtime for path operations
from typing import TYPE_CHECKING

import structlog
from rich.console import Console
from rich.logging import RichHandler

if TYPE_CHECKING:
    from structlog.typing import EventDict, Processor, WrappedLogger

DEBUG_LOG_FILENAME = "debug.jsonl"

# httpx logs every health-check request at INFO
_QUIET_LOGGERS = ("httpx", "httpcore")

_RUN_CONTEXT_KEYS = ("run_id", "mode", "seed")

_SHARED_PROCESSORS: list[Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
]

_configured = False
_file_handler: logging.FileHandler | None = None


def _drop_rich_columns(_logger: WrappedLogger, _name: str, event_dict: EventDict) -> EventDict:
    # RichHandler already prints time, level and origin in its own columns
    for key in ("timestamp", "level", "logger"):
        event_dict.pop(key, None)
    return event_dict


def _console_handler(verbosity: int) -> logging.Handler:
    levels = {0: logging.WARNING, 1: logging.INFO}
    handler = RichHandler(
        console=Console(stderr=True),
        rich_tracebacks=True,
        tracebacks_show_locals=verbosity >= 2,
        show_time=verbosity >= 1,
        show_path=verbosity >= 2,
        markup=False,
        level=levels.get(verbosity, logging.DEBUG),
    )
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_SHARED_PROCESSORS,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                _drop_rich_columns,
                structlog.dev.ConsoleRenderer(colors=False),
            ],
        )
    )
    return handler


def _jsonl_handler(path: Path) -> logging.FileHandler:
    # Regenerated on every run, like the stage logs next to it
    handler = logging.FileHandler(path, mode="w", encoding="utf-8")
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_SHARED_PROCESSORS,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                structlog.processors.JSONRenderer(default=str),
            ],
        )
    )
    return handler


def configure_logging(
    verbosity: int = 0,
    log_to_file: bool = False,
    project_path: Path | None = None,
) -> None:
    """Configure console and optional JSONL logging.

    Args:
        verbosity: 0=WARNING (default), 1=INFO, 2+=DEBUG
        log_to_file: If True, also write all events to {project_path}/logs/debug.jsonl.
        project_path: Project directory for file logging. Required if log_to_file=True.

    Raises:
        ValueError: If log_to_file=True but project_path is not provided.
    """
    global _configured, _file_handler

    if log_to_file and project_path is None:
        raise ValueError("project_path is required when log_to_file=True")

    close_file_logging()

    handlers = [_console_handler(verbosity)]
    if log_to_file and project_path is not None:
        logs_dir = project_path / "logs"
        logs_dir.mkdir(parents=True, exist_ok=True)
        _file_handler = _jsonl_handler(logs_dir / DEBUG_LOG_FILENAME)
        handlers.append(_file_handler)

    root_level = logging.DEBUG if (verbosity > 0 or log_to_file) else logging.WARNING
    logging.basicConfig(level=root_level, handlers=handlers, force=True)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            *_SHARED_PROCESSORS,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(root_level),
        cache_logger_on_first_use=False,
    )

    _configured = True


def get_logger(name: str | None = None) -> structlog.typing.FilteringBoundLogger:
    """Get a structured logger, configuring console logging on first use."""
    if not _configured:
        configure_logging()

    logger: structlog.typing.FilteringBoundLogger = structlog.get_logger(name)
    return logger


def close_file_logging() -> None:
    """Flush and detach the debug.jsonl handler, if any."""
    global _file_handler
    if _file_handler is None:
        return
    logging.getLogger().removeHandler(_file_handler)
    _file_handler.close()
    _file_handler = None


def bind_run_context(*, mode: str, seed: int | None) -> str:
    """Attach a fresh run id, the mode and the seed to every following event.

    Returns:
        The run id, so it can be recorded in the execution report.
    """
    run_id = uuid.uuid4().hex[:12]
    structlog.contextvars.bind_contextvars(run_id=run_id, mode=mode, seed=seed)
    return run_id


def clear_run_context() -> None:
    """Remove the keys bound by bind_run_context."""
    structlog.contextvars.unbind_contextvars(*_RUN_CONTEXT_KEYS)
