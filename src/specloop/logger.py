"""Logging for the specloop CLI.

Library modules log through ``logging.getLogger(__name__)``; the CLI logs
through structlog. Both end up on one stderr handler rendered by
structlog's ``ProcessorFormatter`` so stdout stays free for command results.
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog

_PRE_CHAIN: list[Any] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso"),
]


def setup_logging(*, debug: bool = False, json_output: bool = False) -> None:
    """Install the stderr handler and configure structlog.

    Args:
        debug: Log at DEBUG instead of WARNING.
        json_output: One JSON object per record, for ``--json`` runs.
    """
    renderer: Any = (
        structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(colors=False)
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=_PRE_CHAIN,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(logging.DEBUG if debug else logging.WARNING)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_PRE_CHAIN,
            structlog.processors.StackInfoRenderer(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def bind_run(run_id: str) -> None:
    """Tag every record logged from this context with ``run_id``."""
    structlog.contextvars.bind_contextvars(run_id=run_id)


def get_logger(name: str = "specloop", **initial: Any) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name, **initial)
