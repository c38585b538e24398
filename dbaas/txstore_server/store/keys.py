"""
Wire key handling for the TxStore server.

Keys arrive as wire dictionaries:
    {"partition": {"project_id", "namespace"}, "path": [{"kind", "id"|"name"}]}

The store indexes them by an encoded path string with two properties:
- Sorting the strings sorts keys by path (ids before names per kind)
- A key's encoded path starts with its ancestors' encoded paths + "/"

Invariants:
    - Only the last path element may lack an identifier
    - Encoded ids are zero padded so lexical order is numeric order
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

from ..errors import InvalidRequestError

ID_WIDTH = 20


@dataclass(frozen=True)
class StoreKey:
    """A validated key as the store sees it.

    Attributes:
        project_id: Project from the key partition
        namespace: Namespace from the key partition
        path: Path elements as (kind, id, name) tuples
    """

    project_id: str
    namespace: str
    path: tuple[tuple[str, int | None, str | None], ...]

    @property
    def kind(self) -> str:
        return self.path[-1][0]

    @property
    def is_complete(self) -> bool:
        _, id_, name = self.path[-1]
        return id_ is not None or name is not None

    @property
    def encoded_path(self) -> str:
        return encode_path(self.path)

    def with_id(self, id_: int) -> StoreKey:
        return StoreKey(self.project_id, self.namespace, self.path[:-1] + ((self.kind, id_, None),))

    def to_wire(self) -> dict[str, Any]:
        path = []
        for kind, id_, name in self.path:
            element: dict[str, Any] = {"kind": kind}
            if id_ is not None:
                element["id"] = str(id_)
            elif name is not None:
                element["name"] = name
            path.append(element)
        return {
            "partition": {"project_id": self.project_id, "namespace": self.namespace},
            "path": path,
        }

    @classmethod
    def from_wire(cls, data: Any, project_id: str | None = None) -> StoreKey:
        """Validate and convert a wire key.

        Args:
            data: Wire key dictionary
            project_id: When given, the key must belong to this project

        Raises:
            InvalidRequestError: If the key is malformed
        """
        if not isinstance(data, dict):
            raise InvalidRequestError("Key must be an object")
        partition = data.get("partition") or {}
        key_project = partition.get("project_id") or ""
        if not key_project:
            raise InvalidRequestError("Key partition.project_id is required")
        if project_id is not None and key_project != project_id:
            raise InvalidRequestError(
                f"Key project '{key_project}' does not match request project '{project_id}'"
            )
        raw_path = data.get("path") or []
        if not raw_path:
            raise InvalidRequestError("Key path cannot be empty")

        path = []
        for index, element in enumerate(raw_path):
            kind = element.get("kind") if isinstance(element, dict) else None
            if not kind:
                raise InvalidRequestError("Key path element kind is required")
            raw_id = element.get("id")
            name = element.get("name") or None
            id_ = None
            if raw_id not in (None, ""):
                try:
                    id_ = int(raw_id)
                except (TypeError, ValueError):
                    raise InvalidRequestError(f"Invalid key id {raw_id!r}") from None
                if id_ <= 0:
                    raise InvalidRequestError(f"Key id must be positive, got {id_}")
            if id_ is not None and name is not None:
                raise InvalidRequestError(f"Key element '{kind}' has both id and name")
            if id_ is None and name is None and index < len(raw_path) - 1:
                raise InvalidRequestError(f"Ancestor element '{kind}' must be complete")
            path.append((kind, id_, name))

        return cls(key_project, partition.get("namespace") or "", tuple(path))


def encode_element(kind: str, id_: int | None, name: str | None) -> str:
    if id_ is not None:
        ident = "i" + str(id_).zfill(ID_WIDTH)
    elif name is not None:
        ident = "n" + quote(name, safe="")
    else:
        ident = "?"
    return f"{quote(kind, safe='')}:{ident}"


def encode_path(path: tuple[tuple[str, int | None, str | None], ...]) -> str:
    return "/".join(encode_element(*element) for element in path)
