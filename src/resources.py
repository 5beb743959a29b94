"""
Managed Resources - The object model shared by stores, creators and reconcilers.

A ManagedResource is a Kubernetes-style object: kind, name, namespace,
annotations, labels, an opaque data payload, an optional owner reference,
finalizers, status and an optional deletion timestamp.
"""

import base64
import copy
import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

ANNOTATION_PREFIX = "fleetsync.io/"
LAST_APPLIED_CONFIG_ANNOTATION = ANNOTATION_PREFIX + "last-applied-configuration"
CHECKSUM_ANNOTATION = ANNOTATION_PREFIX + "checksum"

# Kinds whose data values are raw bytes (base64 encoded in JSON form)
BINARY_DATA_KINDS = frozenset({"Secret"})


@dataclass
class OwnerReference:
    """Reference from a dependent object to the object that owns it."""

    kind: str
    name: str
    uid: str = ""
    controller: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": self.controller,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OwnerReference":
        return cls(
            kind=data["kind"],
            name=data["name"],
            uid=data.get("uid", ""),
            controller=data.get("controller", True),
        )


@dataclass
class ManagedResource:
    """An object managed by the reconciliation engine."""

    kind: str
    name: str
    namespace: str = ""
    annotations: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)
    data: Dict[str, Any] = field(default_factory=dict)
    owner_reference: Optional[OwnerReference] = None
    finalizers: List[str] = field(default_factory=list)
    status: Dict[str, Any] = field(default_factory=dict)
    deletion_timestamp: Optional[datetime] = None
    uid: str = ""
    resource_version: int = 0

    @property
    def key(self) -> str:
        """Queue key: ``namespace/name``, or ``name`` when cluster-scoped."""
        return object_key(self.namespace, self.name)

    @property
    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None

    def deep_copy(self) -> "ManagedResource":
        return copy.deepcopy(self)

    def to_dict(self) -> Dict[str, Any]:
        """
        Serialize to a JSON-compatible dict.

        Byte values in the data of binary kinds (Secrets) are base64 encoded,
        the same way the Kubernetes API represents them.
        """
        data = copy.deepcopy(self.data)
        if self.kind in BINARY_DATA_KINDS:
            data = {
                k: base64.b64encode(v).decode("ascii")
                if isinstance(v, (bytes, bytearray))
                else v
                for k, v in data.items()
            }

        result: Dict[str, Any] = {
            "kind": self.kind,
            "name": self.name,
            "namespace": self.namespace,
            "annotations": dict(self.annotations),
            "labels": dict(self.labels),
            "data": data,
            "finalizers": list(self.finalizers),
            "status": copy.deepcopy(self.status),
            "uid": self.uid,
            "resource_version": self.resource_version,
        }
        if self.owner_reference is not None:
            result["owner_reference"] = self.owner_reference.to_dict()
        if self.deletion_timestamp is not None:
            result["deletion_timestamp"] = self.deletion_timestamp.isoformat()
        return result

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "ManagedResource":
        """Inverse of :meth:`to_dict`."""
        kind = raw["kind"]
        data = copy.deepcopy(raw.get("data") or {})
        if kind in BINARY_DATA_KINDS:
            data = {
                k: base64.b64decode(v) if isinstance(v, str) else v
                for k, v in data.items()
            }

        owner = raw.get("owner_reference")
        deletion = raw.get("deletion_timestamp")
        return cls(
            kind=kind,
            name=raw["name"],
            namespace=raw.get("namespace") or "",
            annotations=dict(raw.get("annotations") or {}),
            labels=dict(raw.get("labels") or {}),
            data=data,
            owner_reference=OwnerReference.from_dict(owner) if owner else None,
            finalizers=list(raw.get("finalizers") or []),
            status=copy.deepcopy(raw.get("status") or {}),
            deletion_timestamp=datetime.fromisoformat(deletion) if deletion else None,
            uid=raw.get("uid") or "",
            resource_version=int(raw.get("resource_version") or 0),
        )


def object_key(namespace: str, name: str) -> str:
    return f"{namespace}/{name}" if namespace else name


def split_key(key: str) -> tuple[str, str]:
    """Split a queue key into ``(namespace, name)``."""
    if "/" in key:
        namespace, name = key.split("/", 1)
        return namespace, name
    return "", key


def _normalize(value: Any) -> Any:
    # None and empty containers compare equal, like equality.Semantic
    if isinstance(value, dict):
        normalized = {k: _normalize(v) for k, v in value.items()}
        return {k: v for k, v in normalized.items() if v is not None} or None
    if isinstance(value, (list, tuple)):
        items = [_normalize(v) for v in value]
        return items or None
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str) and value == "":
        return None
    return value


def semantic_equal(a: Optional[ManagedResource], b: Optional[ManagedResource]) -> bool:
    """
    Structural equality between two objects.

    Unset and empty values (None, "", {}, []) are treated as equal.
    """
    if a is None or b is None:
        return a is b
    return values_equal(a.to_dict(), b.to_dict())


def values_equal(a: Any, b: Any) -> bool:
    """Compare two plain values with the same empty-value rules."""
    return _normalize(a) == _normalize(b)


def get_path(obj: ManagedResource, path: tuple) -> Any:
    """
    Read a dotted field path from an object.

    The first segment names an attribute (``data``, ``labels``, ...); the
    remaining segments index into nested dicts. Missing segments yield None.
    """
    value: Any = getattr(obj, path[0], None)
    for part in path[1:]:
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


STORE_OWNED_FIELDS = ("uid", "resource_version", "status", "deletion_timestamp")


def applied_fields(obj: ManagedResource) -> Dict[str, Any]:
    """
    Fields of an object that we set, as a dict fit for a merge patch.

    Store-owned fields are left out, and so are empty fields: an absent key
    leaves whatever another actor wrote in place instead of clearing it.
    """
    raw = obj.to_dict()
    for store_owned in STORE_OWNED_FIELDS:
        raw.pop(store_owned, None)
    return {k: v for k, v in raw.items() if v not in ("", [], {}, None)}


def last_applied_configuration(obj: ManagedResource) -> str:
    """Canonical JSON snapshot of an object as we applied it."""
    raw = applied_fields(obj)
    annotations = {
        k: v
        for k, v in raw.pop("annotations", {}).items()
        if k != LAST_APPLIED_CONFIG_ANNOTATION
    }
    if annotations:
        raw["annotations"] = annotations
    return json.dumps(raw, sort_keys=True, separators=(",", ":"))


# Finalizer helpers


def has_finalizer(obj: ManagedResource, finalizer: str) -> bool:
    return finalizer in obj.finalizers


def add_finalizer(obj: ManagedResource, finalizer: str) -> None:
    if finalizer not in obj.finalizers:
        obj.finalizers.append(finalizer)


def remove_finalizer(obj: ManagedResource, finalizer: str) -> None:
    obj.finalizers = [f for f in obj.finalizers if f != finalizer]
