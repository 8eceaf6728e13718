#!/usr/bin/env python3
# CUI // SP-CTI
"""Refinery — Structured Exception Hierarchy.

Policy-level outcomes (blocked proposals, refused lifecycle transitions,
failed validation checks) are returned as result objects and never raised.
These exceptions are reserved for programmer errors and broken setup.

Usage:
    from refinery.resilience.errors import RecordNotFoundError

    raise RecordNotFoundError("release", release_id)
"""


class RefineryError(Exception):
    """Base exception for all Refinery errors.

    Attributes:
        service: Name of the subsystem that raised the error (e.g. "storage").
        retryable: Whether the caller should retry the operation.
    """

    def __init__(self, message: str, service: str = "", retryable: bool = False):
        super().__init__(message)
        self.service = service
        self.retryable = retryable


class RefineryTransientError(RefineryError):
    """Transient error — the operation may succeed on retry.

    Examples: SQLite database locked by another writer.
    """

    def __init__(self, message: str, service: str = "", retryable: bool = True):
        super().__init__(message, service=service, retryable=retryable)


class RefineryPermanentError(RefineryError):
    """Permanent error — retrying will not help.

    Examples: referencing a record that does not exist, invalid configuration.
    """

    def __init__(self, message: str, service: str = "", retryable: bool = False):
        super().__init__(message, service=service, retryable=retryable)


class RecordNotFoundError(RefineryPermanentError):
    """A referenced record (plan, proposal, release, case) does not exist.

    Raised where the caller is expected to have validated existence first.
    """

    def __init__(self, collection: str, record_id: str):
        super().__init__(
            f"{collection} '{record_id}' not found",
            service="storage",
            retryable=False,
        )
        self.collection = collection
        self.record_id = record_id


class ConfigurationError(RefineryPermanentError):
    """Configuration error — missing or invalid configuration."""

    def __init__(self, message: str, config_key: str = ""):
        super().__init__(message, service="config", retryable=False)
        self.config_key = config_key
