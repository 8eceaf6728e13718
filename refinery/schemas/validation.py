#!/usr/bin/env python3
# CUI // SP-CTI
"""Schema validation utilities.

Builds the shared dataclass models from stored payload dicts before
they are handed to callers. Any shape mismatch surfaces as a single
SchemaValidationError so the record store can skip corrupt rows.
"""

from dataclasses import fields as dc_fields
from typing import Any, Type


class SchemaValidationError(Exception):
    """Raised when a payload does not match the expected schema."""
    pass


def build_record(data: Any, schema_class: Type):
    """Construct ``schema_class`` from ``data`` or raise SchemaValidationError.

    Missing required fields, invalid enumerated values and wrong nested
    shapes all surface as SchemaValidationError.
    """
    if not isinstance(data, dict):
        raise SchemaValidationError(f"Expected dict, got {type(data).__name__}")
    try:
        if hasattr(schema_class, "from_dict"):
            return schema_class.from_dict(data)
        known = {f.name for f in dc_fields(schema_class)}
        return schema_class(**{k: v for k, v in data.items() if k in known})
    except (TypeError, ValueError, KeyError, AttributeError) as exc:
        raise SchemaValidationError(f"Validation failed for {schema_class.__name__}: {exc}")
