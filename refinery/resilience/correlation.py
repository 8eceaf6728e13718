#!/usr/bin/env python3
# CUI // SP-CTI
"""Refinery — Correlation IDs.

Request-scoped correlation IDs propagated into log records and the audit
trail. One tool call (a triage pass, a release transition) runs under one
correlation ID so its audit entries can be queried together.

Usage:
    from refinery.resilience.correlation import correlation_scope

    with correlation_scope() as cid:
        engine.triage_findings(consensus)   # audit entries carry cid
"""

import contextlib
import logging
import threading
import uuid
from typing import Iterator, Optional

logger = logging.getLogger("refinery.resilience.correlation")

# Thread-local storage (CLI tools, worker threads)
_thread_local = threading.local()


def generate_correlation_id() -> str:
    """Generate a 12-character correlation ID (UUID prefix)."""
    return uuid.uuid4().hex[:12]


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID, or None outside any scope."""
    return getattr(_thread_local, "correlation_id", None)


def set_correlation_id(correlation_id: str):
    """Set the correlation ID in thread-local storage."""
    _thread_local.correlation_id = correlation_id


def clear_correlation_id():
    """Clear the thread-local correlation ID."""
    _thread_local.correlation_id = None


@contextlib.contextmanager
def correlation_scope(correlation_id: Optional[str] = None) -> Iterator[str]:
    """Run a block under a correlation ID, restoring the previous one after."""
    previous = get_correlation_id()
    cid = correlation_id or generate_correlation_id()
    set_correlation_id(cid)
    try:
        yield cid
    finally:
        if previous is None:
            clear_correlation_id()
        else:
            set_correlation_id(previous)


class CorrelationLogFilter(logging.Filter):
    """Logging filter that injects correlation_id into log records.

    Usage:
        handler = logging.StreamHandler()
        handler.addFilter(CorrelationLogFilter())
        formatter = logging.Formatter(
            "%(asctime)s [%(correlation_id)s] %(name)s: %(message)s"
        )
        handler.setFormatter(formatter)
    """

    def filter(self, record):
        record.correlation_id = get_correlation_id() or "-"
        return True


def configure_cli_logging(level: int = logging.INFO):
    """Stderr logging for the CLI entry points, tagged with correlation IDs."""
    handler = logging.StreamHandler()
    handler.addFilter(CorrelationLogFilter())
    handler.setFormatter(logging.Formatter(
        "%(asctime)s [%(correlation_id)s] [%(name)s] %(levelname)s: %(message)s"
    ))
    logging.basicConfig(level=level, handlers=[handler])
