"""
Key types for TxStore SDK.

This module provides entity identity:
- PathElement: One (kind, identifier) step of a key path
- Key: Immutable hierarchical entity key within a partition
- KeyFactory: Builder for keys sharing project, namespace and ancestors

A key path is a sequence of (kind, identifier) pairs. The identifier is
either a caller-provided name (str) or a server-allocated numeric id.
A key whose last element has no identifier is incomplete; the server
assigns an id when it is allocated or committed.

Invariants:
    - Keys are immutable and hashable
    - Only the last path element may be incomplete
    - Numeric ids are positive, names are non-empty

Example:
    >>> factory = KeyFactory("my-project").kind("Task")
    >>> key = factory.new_key("sample-task")
    >>> key.kind, key.name
    ('Task', 'sample-task')
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Union

from .errors import ValidationError

IdOrName = Union[int, str]


@dataclass(frozen=True)
class PathElement:
    """One step of a key path.

    Attributes:
        kind: Entity kind
        id: Server-allocated numeric id
        name: Caller-provided name
    """

    kind: str
    id: int | None = None
    name: str | None = None

    def __post_init__(self) -> None:
        if not self.kind or not isinstance(self.kind, str):
            raise ValidationError("Key kind must be a non-empty string", field_name="kind")
        if self.id is not None and self.name is not None:
            raise ValidationError(
                f"Path element for kind '{self.kind}' cannot have both id and name"
            )
        if self.id is not None:
            if isinstance(self.id, bool) or not isinstance(self.id, int) or self.id <= 0:
                raise ValidationError(f"Key id must be a positive integer, got {self.id!r}")
        if self.name is not None and (not isinstance(self.name, str) or not self.name):
            raise ValidationError(f"Key name must be a non-empty string, got {self.name!r}")

    @classmethod
    def of(cls, kind: str, id_or_name: IdOrName | None = None) -> PathElement:
        """Create a path element from a kind and an id or name."""
        if id_or_name is None:
            return cls(kind)
        if isinstance(id_or_name, str):
            return cls(kind, name=id_or_name)
        return cls(kind, id=id_or_name)

    @property
    def id_or_name(self) -> IdOrName | None:
        return self.id if self.id is not None else self.name

    @property
    def is_complete(self) -> bool:
        return self.id is not None or self.name is not None

    def sort_key(self) -> tuple[str, int, int, str]:
        """Ordering key: kind, then ids before names."""
        if self.id is not None:
            return (self.kind, 0, self.id, "")
        if self.name is not None:
            return (self.kind, 1, 0, self.name)
        return (self.kind, 2, 0, "")

    def to_wire(self) -> dict[str, Any]:
        result: dict[str, Any] = {"kind": self.kind}
        if self.id is not None:
            result["id"] = str(self.id)
        elif self.name is not None:
            result["name"] = self.name
        return result

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> PathElement:
        raw_id = data.get("id")
        return cls(
            kind=data["kind"],
            id=int(raw_id) if raw_id not in (None, "") else None,
            name=data.get("name") or None,
        )

    def __str__(self) -> str:
        if self.id is not None:
            return f"{self.kind}:{self.id}"
        if self.name is not None:
            return f"{self.kind}:'{self.name}'"
        return f"{self.kind}:?"


@dataclass(frozen=True)
class Key:
    """Immutable entity key.

    Attributes:
        project_id: Project the key belongs to
        path: Path elements from root ancestor to the entity itself
        namespace: Optional namespace within the project
    """

    project_id: str
    path: tuple[PathElement, ...]
    namespace: str = ""

    def __post_init__(self) -> None:
        if not self.project_id:
            raise ValidationError("Key project_id is required", field_name="project_id")
        if not self.path:
            raise ValidationError("Key path cannot be empty", field_name="path")
        # Normalize lists passed by callers
        if not isinstance(self.path, tuple):
            object.__setattr__(self, "path", tuple(self.path))
        for element in self.path[:-1]:
            if not element.is_complete:
                raise ValidationError(f"Ancestor path element {element} must be complete")

    @classmethod
    def of(
        cls,
        project_id: str,
        *pairs: tuple[str, IdOrName | None],
        namespace: str = "",
    ) -> Key:
        """Create a key from (kind, id_or_name) pairs."""
        return cls(
            project_id=project_id,
            path=tuple(PathElement.of(kind, ident) for kind, ident in pairs),
            namespace=namespace,
        )

    @property
    def kind(self) -> str:
        return self.path[-1].kind

    @property
    def id(self) -> int | None:
        return self.path[-1].id

    @property
    def name(self) -> str | None:
        return self.path[-1].name

    @property
    def id_or_name(self) -> IdOrName | None:
        return self.path[-1].id_or_name

    @property
    def is_complete(self) -> bool:
        return self.path[-1].is_complete

    @property
    def parent(self) -> Key | None:
        """Key of the direct ancestor, or None for root keys."""
        if len(self.path) == 1:
            return None
        return Key(self.project_id, self.path[:-1], self.namespace)

    def is_ancestor_of(self, other: Key) -> bool:
        """Whether this key is a strict ancestor of other."""
        return (
            self.project_id == other.project_id
            and self.namespace == other.namespace
            and len(self.path) < len(other.path)
            and other.path[: len(self.path)] == self.path
        )

    def with_id(self, id: int) -> Key:
        """Return a complete copy of an incomplete key."""
        if self.is_complete:
            raise ValidationError(f"Key {self} is already complete")
        last = PathElement(self.kind, id=id)
        return Key(self.project_id, self.path[:-1] + (last,), self.namespace)

    def sort_key(self) -> tuple[Any, ...]:
        return (
            self.project_id,
            self.namespace,
            tuple(element.sort_key() for element in self.path),
        )

    def __lt__(self, other: Key) -> bool:
        if not isinstance(other, Key):
            return NotImplemented
        return self.sort_key() < other.sort_key()

    def to_wire(self) -> dict[str, Any]:
        """Convert to wire dictionary."""
        return {
            "partition": {"project_id": self.project_id, "namespace": self.namespace},
            "path": [element.to_wire() for element in self.path],
        }

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> Key:
        """Create from wire dictionary."""
        partition = data.get("partition") or {}
        return cls(
            project_id=partition.get("project_id", ""),
            path=tuple(PathElement.from_wire(p) for p in data.get("path", [])),
            namespace=partition.get("namespace", "") or "",
        )

    def __str__(self) -> str:
        path = "/".join(str(element) for element in self.path)
        if self.namespace:
            return f"{self.project_id}[{self.namespace}]/{path}"
        return f"{self.project_id}/{path}"


class KeyFactory:
    """Builder for keys.

    Settings are sticky: project, namespace, ancestors and kind carry
    over between new_key() calls until changed.

    Example:
        >>> factory = KeyFactory("demo").ancestors(("Parent", "p1")).kind("Child")
        >>> factory.new_key(7)
        Key(project_id='demo', path=(...), namespace='')
    """

    def __init__(self, project_id: str, namespace: str = "") -> None:
        """Initialize a key factory.

        Args:
            project_id: Project for every produced key
            namespace: Default namespace
        """
        self._project_id = project_id
        self._namespace = namespace
        self._ancestors: tuple[PathElement, ...] = ()
        self._kind: str | None = None

    def namespace(self, namespace: str) -> KeyFactory:
        self._namespace = namespace
        return self

    def kind(self, kind: str) -> KeyFactory:
        self._kind = kind
        return self

    def ancestors(self, *elements: PathElement | tuple[str, IdOrName]) -> KeyFactory:
        """Set the ancestor path.

        Args:
            *elements: PathElement instances or (kind, id_or_name) pairs

        Returns:
            Self for chaining
        """
        converted = []
        for element in elements:
            if not isinstance(element, PathElement):
                element = PathElement.of(*element)
            if not element.is_complete:
                raise ValidationError(f"Ancestor {element} must be complete")
            converted.append(element)
        self._ancestors = tuple(converted)
        return self

    def parent(self, key: Key) -> KeyFactory:
        """Use a complete key as the ancestor path."""
        if not key.is_complete:
            raise ValidationError(f"Parent key {key} must be complete")
        self._namespace = key.namespace
        self._ancestors = key.path
        return self

    def new_key(self, id_or_name: IdOrName | None = None) -> Key:
        """Build a key; omit id_or_name for an incomplete key."""
        if self._kind is None:
            raise ValidationError("KeyFactory.kind() must be set before new_key()")
        return Key(
            project_id=self._project_id,
            path=self._ancestors + (PathElement.of(self._kind, id_or_name),),
            namespace=self._namespace,
        )

    def reset(self) -> KeyFactory:
        """Clear ancestors and kind."""
        self._ancestors = ()
        self._kind = None
        return self


def keys_from_wire(items: Iterable[dict[str, Any]]) -> list[Key]:
    return [Key.from_wire(item) for item in items]
