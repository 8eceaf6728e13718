# CUI // SP-CTI
"""Refinery compatibility helpers (time handling, path resolution)."""
from refinery.compat.datetime_utils import (  # noqa: F401
    parse_iso,
    to_iso,
    utc_now,
    utc_now_iso,
)
