"""Observability module for the QA playbook.

Provides structured logging for the orchestrator and its collaborators.
"""

from qaplaybook.observability.logging import (
    bind_run_context,
    clear_run_context,
    close_file_logging,
    configure_logging,
    get_logger,
)

__all__ = [
    "bind_run_context",
    "clear_run_context",
    "close_file_logging",
    "configure_logging",
    "get_logger",
]
