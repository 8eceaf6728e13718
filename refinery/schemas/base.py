#!/usr/bin/env python3
# CUI // SP-CTI
"""Base model for schema dataclasses.

Every persisted or returned structure round-trips through plain dicts so
records can be stored as JSON and returned from CLI tools unchanged.
"""

from dataclasses import asdict, fields
from typing import Any, Dict, Type, TypeVar

T = TypeVar("T", bound="SchemaModel")


class SchemaModel:
    """Mixin giving dataclasses dict (de)serialization.

    Subclasses with nested dataclass fields override ``from_dict`` to build
    the nested values; ``to_dict`` works unchanged through ``asdict``.
    """

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)  # type: ignore[arg-type]

    @classmethod
    def from_dict(cls: Type[T], data: dict) -> T:
        known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
        return cls(**{k: v for k, v in data.items() if k in known})
