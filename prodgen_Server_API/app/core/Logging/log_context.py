"""
Lightweight logging context helpers for propagating request/job identifiers.

Usage:

    from prodgen_Server_API.app.core.Logging.log_context import log_context

    with log_context(job_id=job.id, stage="scrape") as log:
        log.info("Starting stage")
        ...

The context manager both contextualizes the base logger (so nested logs inherit
the fields) and returns a bound logger for convenience.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator
import uuid

from loguru import logger


def new_request_id() -> str:
    """Return a new opaque request identifier (hex)."""
    return uuid.uuid4().hex


@contextmanager
def log_context(**fields: Any) -> Iterator[Any]:
    """Context manager that sets structured logging fields and yields a bound logger.

    None values are dropped so callers can pass optional identifiers directly.
    """
    clean = {k: v for k, v in fields.items() if v is not None}
    with logger.contextualize(**clean):
        bound = logger.bind(**clean)
        yield bound
