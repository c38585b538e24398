"""
Entity value objects for TxStore SDK.

This module provides:
- Entity: Immutable key + ordered property mapping
- EntityBuilder: Mutable builder producing Entity instances
- encode_value / decode_value: Typed property value wire codec

Supported property types:
    None, bool, int, finite float, str, bytes, timezone-aware datetime,
    Key, and lists of these.

Invariants:
    - Entities are immutable once built
    - Property order is insertion order locally; equality ignores it
    - Naive datetimes are rejected to keep timestamps unambiguous

Example:
    >>> entity = (
    ...     Entity.builder(key)
    ...     .set("description", "commit()")
    ...     .set("priority", 4)
    ...     .build()
    ... )
    >>> entity["priority"]
    4
"""

from __future__ import annotations

import base64
import math
from collections.abc import Iterator, Mapping
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any

from .errors import ValidationError
from .keys import Key

_SCALAR_TYPES = (bool, int, float, str, bytes)


def _check_value(name: str, value: Any) -> Any:
    """Validate a property value and normalize lists to tuples."""
    if isinstance(value, float) and not math.isfinite(value):
        raise ValidationError(
            f"Property '{name}' must be a finite number, got {value!r}",
            field_name=name,
        )
    if value is None or isinstance(value, (_SCALAR_TYPES, Key)):
        return value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            raise ValidationError(
                f"Property '{name}' datetime must be timezone-aware",
                field_name=name,
            )
        return value.astimezone(timezone.utc)
    if isinstance(value, (list, tuple)):
        items = []
        for item in value:
            if isinstance(item, (list, tuple)):
                raise ValidationError(
                    f"Property '{name}' cannot contain nested lists", field_name=name
                )
            items.append(_check_value(name, item))
        return tuple(items)
    raise ValidationError(
        f"Property '{name}' has unsupported type {type(value).__name__}",
        field_name=name,
    )


def encode_value(value: Any) -> dict[str, Any]:
    """Encode a property value into its tagged wire form."""
    if value is None:
        return {"null_value": None}
    # bool before int: bool is an int subclass
    if isinstance(value, bool):
        return {"boolean_value": value}
    if isinstance(value, int):
        return {"integer_value": str(value)}
    if isinstance(value, float):
        return {"double_value": value}
    if isinstance(value, str):
        return {"string_value": value}
    if isinstance(value, bytes):
        return {"blob_value": base64.b64encode(value).decode("ascii")}
    if isinstance(value, datetime):
        return {"timestamp_value": value.astimezone(timezone.utc).isoformat()}
    if isinstance(value, Key):
        return {"key_value": value.to_wire()}
    if isinstance(value, (list, tuple)):
        return {"array_value": {"values": [encode_value(v) for v in value]}}
    raise ValidationError(f"Cannot encode value of type {type(value).__name__}")


def decode_value(data: dict[str, Any]) -> Any:
    """Decode a tagged wire value."""
    if "null_value" in data:
        return None
    if "boolean_value" in data:
        return bool(data["boolean_value"])
    if "integer_value" in data:
        return int(data["integer_value"])
    if "double_value" in data:
        return float(data["double_value"])
    if "string_value" in data:
        return data["string_value"]
    if "blob_value" in data:
        return base64.b64decode(data["blob_value"])
    if "timestamp_value" in data:
        return datetime.fromisoformat(data["timestamp_value"])
    if "key_value" in data:
        return Key.from_wire(data["key_value"])
    if "array_value" in data:
        return tuple(decode_value(v) for v in (data["array_value"] or {}).get("values", []))
    raise ValidationError(f"Unknown wire value: {sorted(data)}")


class Entity(Mapping[str, Any]):
    """Immutable entity: a key plus ordered properties.

    Behaves as a read-only mapping of property name to value.
    Equality compares key and properties as a mapping.

    Attributes:
        key: Entity key
        properties: Read-only property mapping
    """

    __slots__ = ("_key", "_properties")

    def __init__(self, key: Key, properties: Mapping[str, Any] | None = None) -> None:
        if not isinstance(key, Key):
            raise ValidationError(f"Entity key must be a Key, got {type(key).__name__}")
        checked = {name: _check_value(name, value) for name, value in (properties or {}).items()}
        self._key = key
        self._properties = MappingProxyType(checked)

    @staticmethod
    def builder(key_or_entity: Key | Entity) -> EntityBuilder:
        """Start a builder from a key or by copying an entity."""
        if isinstance(key_or_entity, Entity):
            return EntityBuilder(key_or_entity.key, dict(key_or_entity.properties))
        return EntityBuilder(key_or_entity)

    def to_builder(self) -> EntityBuilder:
        return Entity.builder(self)

    @property
    def key(self) -> Key:
        return self._key

    @property
    def properties(self) -> Mapping[str, Any]:
        return self._properties

    def __getitem__(self, name: str) -> Any:
        return self._properties[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._properties)

    def __len__(self) -> int:
        return len(self._properties)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Entity):
            return NotImplemented
        return self._key == other._key and dict(self._properties) == dict(other._properties)

    def __hash__(self) -> int:
        return hash((self._key, tuple(sorted(self._properties.items(), key=lambda kv: kv[0]))))

    def __repr__(self) -> str:
        return f"Entity(key={self._key}, properties={dict(self._properties)!r})"

    def to_wire(self) -> dict[str, Any]:
        """Convert to wire dictionary."""
        return {
            "key": self._key.to_wire(),
            "properties": {name: encode_value(v) for name, v in self._properties.items()},
        }

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> Entity:
        """Create from wire dictionary."""
        return cls(
            Key.from_wire(data["key"]),
            {name: decode_value(v) for name, v in (data.get("properties") or {}).items()},
        )


class EntityBuilder:
    """Mutable builder for Entity.

    Example:
        >>> entity = Entity.builder(key).set("done", False).build()
    """

    def __init__(self, key: Key, properties: dict[str, Any] | None = None) -> None:
        self._key = key
        self._properties: dict[str, Any] = dict(properties or {})

    def key(self, key: Key) -> EntityBuilder:
        self._key = key
        return self

    def set(self, name: str, value: Any) -> EntityBuilder:
        """Set a property, validating its type immediately.

        Raises:
            ValidationError: If name is empty or value type is unsupported
        """
        if not name or not isinstance(name, str):
            raise ValidationError("Property name must be a non-empty string")
        self._properties[name] = _check_value(name, value)
        return self

    def remove(self, name: str) -> EntityBuilder:
        self._properties.pop(name, None)
        return self

    def clear(self) -> EntityBuilder:
        self._properties.clear()
        return self

    def build(self) -> Entity:
        return Entity(self._key, self._properties)
