"""
structlog configuration for the appendbatch pipeline.
"""

import logging
import typing as t
from collections.abc import Iterator
from contextlib import contextmanager

import structlog

LOGGER_NAME = "appendbatch"


def _shared_processors() -> list[t.Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]


def setup_logging(level: int = logging.INFO, *, json_output: bool = False) -> None:
    """
    Route appendbatch events through stdlib logging.

    Parameters
    ----------
    level : int, optional
        Level of the ``appendbatch`` logger.
    json_output : bool, optional
        Render one JSON object per event instead of console lines.
    """
    logging.basicConfig(format="%(message)s", level=logging.WARNING)
    logging.getLogger(LOGGER_NAME).setLevel(level)

    renderer: t.Any = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer(colors=True)
    )
    structlog.configure(
        processors=[*_shared_processors(), renderer],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


@contextmanager
def logging_context(**context: t.Any) -> Iterator[None]:
    """
    Bind ``context`` to every event logged inside the block.

    Keys that an outer block already bound keep their outer value.
    """
    bound = structlog.contextvars.get_contextvars()
    missing = {key: value for key, value in context.items() if key not in bound}
    with structlog.contextvars.bound_contextvars(**missing):
        yield
