#!/usr/bin/env python3
# CUI // SP-CTI
"""Refinery Resilience Package — Errors, Correlation, Per-target Locks."""

from refinery.resilience.correlation import (  # noqa: F401
    CorrelationLogFilter,
    configure_cli_logging,
    correlation_scope,
    get_correlation_id,
    set_correlation_id,
)
from refinery.resilience.errors import (  # noqa: F401
    ConfigurationError,
    RecordNotFoundError,
    RefineryError,
    RefineryPermanentError,
    RefineryTransientError,
)
from refinery.resilience.locks import TargetLockRegistry  # noqa: F401
