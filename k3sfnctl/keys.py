"""
Work-queue key and ownership helpers.

A key is the string ``namespace/name`` of a Function. Managed objects point back
to their Function through an owner reference, which the garbage-collection
sweep reads to recover the key.
"""

from dataclasses import dataclass
from typing import Any, Iterable, List, Optional, Tuple

from .exceptions import InvalidFunctionError, InvalidKeyError
from .types import (
    FUNCTION_API_VERSION,
    FUNCTION_GROUP,
    FUNCTION_KIND,
    Function,
    OwnerReference,
)


@dataclass
class DeletedFinalStateUnknown:
    """Tombstone for an object whose deletion was missed while disconnected.

    The informer hands these to delete handlers when a relist shows an object
    has vanished; ``obj`` is the last state seen and may be stale.
    """
    key: str
    obj: Any


def meta_namespace_key(obj: Any) -> str:
    """Return ``namespace/name`` for a Function or raw object dict."""
    if isinstance(obj, Function):
        return obj.key
    if isinstance(obj, dict):
        metadata = obj.get("metadata") or {}
        name = metadata.get("name")
        namespace = metadata.get("namespace")
        if not name:
            raise InvalidKeyError("Object has no metadata.name")
        return f"{namespace}/{name}" if namespace else name
    raise InvalidKeyError(f"Cannot compute key for {type(obj).__name__}")


def deletion_handling_key(obj: Any) -> str:
    """Like :func:`meta_namespace_key`, but accepts tombstones."""
    if isinstance(obj, DeletedFinalStateUnknown):
        return obj.key
    return meta_namespace_key(obj)


def split_key(key: str) -> Tuple[str, str]:
    """Split a ``namespace/name`` key.

    Cluster-scoped keys (no slash) yield an empty namespace.

    Raises:
        InvalidKeyError: If the key has more than one slash or empty parts
    """
    if not isinstance(key, str):
        raise InvalidKeyError(f"Unexpected key type: {type(key).__name__}")
    parts = key.split("/")
    if len(parts) == 1 and parts[0]:
        return "", parts[0]
    if len(parts) == 2 and parts[0] and parts[1]:
        return parts[0], parts[1]
    raise InvalidKeyError(f"Unexpected key format: {key!r}")


def owner_reference(func: Function) -> List[OwnerReference]:
    """Build the owner references stamped on every object managed for ``func``."""
    if not func.uid:
        raise InvalidFunctionError(f"Function {func.key} has no uid")
    return [
        OwnerReference(
            api_version=FUNCTION_API_VERSION,
            kind=FUNCTION_KIND,
            name=func.name,
            uid=func.uid,
            controller=True,
            block_owner_deletion=True,
        )
    ]


def owning_function_key(
    namespace: str,
    owner_references: Optional[Iterable[OwnerReference]],
) -> Optional[str]:
    """Return the key of the Function owning an object, if any.

    Functions and their objects always share a namespace.
    """
    for ref in owner_references or []:
        if ref.kind == FUNCTION_KIND and ref.group == FUNCTION_GROUP and ref.name:
            return f"{namespace}/{ref.name}" if namespace else ref.name
    return None


def cron_job_name(name: str) -> str:
    """Name of the CronJob backing a scheduled function."""
    return f"trigger-{name}"
