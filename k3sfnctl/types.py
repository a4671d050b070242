"""
Type definitions for k3sfn Function resources.

These dataclasses mirror the ``functions.k3sfn.io`` custom resource and the
owner references the controller stamps on every object it manages.
"""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .exceptions import InvalidFunctionError

FUNCTION_GROUP = "k3sfn.io"
FUNCTION_VERSION = "v1beta1"
FUNCTION_API_VERSION = f"{FUNCTION_GROUP}/{FUNCTION_VERSION}"
FUNCTION_KIND = "Function"
FUNCTION_PLURAL = "functions"

FUNCTION_LABEL = "function"
MANAGED_LABEL = "k3sfn.io/function"


class TriggerType(str, Enum):
    """How a function is invoked."""
    HTTP = "HTTP"
    PUBSUB = "PubSub"
    SCHEDULED = "Scheduled"

    @classmethod
    def _missing_(cls, value: object) -> Optional["TriggerType"]:
        if not isinstance(value, str):
            return None
        normalized = value.strip().lower()
        if normalized == "":
            return cls.HTTP
        if normalized == "schedule":
            return cls.SCHEDULED
        for member in cls:
            if member.value.lower() == normalized:
                return member
        return None


class MetricSourceType(str, Enum):
    """HorizontalPodAutoscaler metric source types."""
    OBJECT = "Object"
    PODS = "Pods"
    RESOURCE = "Resource"
    EXTERNAL = "External"
    CONTAINER_RESOURCE = "ContainerResource"


def _mapping(data: Any, field_name: str) -> Dict[str, Any]:
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise InvalidFunctionError(f"{field_name} must be a mapping, got {type(data).__name__}")
    return data


@dataclass
class OwnerReference:
    """Back-reference from a managed object to the Function that produced it."""
    api_version: str
    kind: str
    name: str
    uid: str = ""
    controller: bool = False
    block_owner_deletion: bool = False

    @property
    def group(self) -> str:
        """API group part of ``api_version`` (empty for the core group)."""
        if "/" in self.api_version:
            return self.api_version.split("/", 1)[0]
        # Older objects record the bare group as apiVersion
        return self.api_version if "." in self.api_version else ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": self.controller,
            "blockOwnerDeletion": self.block_owner_deletion,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OwnerReference":
        return cls(
            api_version=data.get("apiVersion", data.get("api_version", "")) or "",
            kind=data.get("kind", "") or "",
            name=data.get("name", "") or "",
            uid=data.get("uid", "") or "",
            controller=bool(data.get("controller", False)),
            block_owner_deletion=bool(
                data.get("blockOwnerDeletion", data.get("block_owner_deletion", False))
            ),
        )


@dataclass
class FunctionSpec:
    """Desired state of a Function."""
    handler: str = ""
    function: str = ""
    checksum: str = ""
    runtime: str = ""
    timeout: str = ""
    deps: str = ""
    type: TriggerType = TriggerType.HTTP
    topic: str = ""
    schedule: str = ""
    service: Dict[str, Any] = field(default_factory=dict)
    deployment: Dict[str, Any] = field(default_factory=dict)
    horizontal_pod_autoscaler: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "FunctionSpec":
        data = _mapping(data, "spec")
        trigger = data.get("type") or ""
        try:
            trigger_type = TriggerType(trigger)
        except ValueError:
            raise InvalidFunctionError(f"Unknown trigger type: {trigger}")
        timeout = data.get("timeout", "")
        return cls(
            handler=data.get("handler", "") or "",
            function=data.get("function", "") or "",
            checksum=data.get("checksum", "") or "",
            runtime=data.get("runtime", "") or "",
            timeout=str(timeout) if timeout not in (None, "") else "",
            deps=data.get("deps", "") or "",
            type=trigger_type,
            topic=data.get("topic", "") or "",
            schedule=data.get("schedule", "") or "",
            service=copy.deepcopy(_mapping(data.get("service"), "spec.service")),
            deployment=copy.deepcopy(_mapping(data.get("deployment"), "spec.deployment")),
            horizontal_pod_autoscaler=copy.deepcopy(
                _mapping(data.get("horizontalPodAutoscaler"), "spec.horizontalPodAutoscaler")
            ),
        )

    @property
    def autoscaler_name(self) -> str:
        return (self.horizontal_pod_autoscaler.get("metadata") or {}).get("name", "") or ""

    @property
    def scale_target_name(self) -> str:
        hpa_spec = self.horizontal_pod_autoscaler.get("spec") or {}
        return (hpa_spec.get("scaleTargetRef") or {}).get("name", "") or ""

    @property
    def metrics(self) -> List[Dict[str, Any]]:
        hpa_spec = self.horizontal_pod_autoscaler.get("spec") or {}
        return list(hpa_spec.get("metrics") or [])

    @property
    def has_autoscaler(self) -> bool:
        """True when the autoscaler names itself and its scale target."""
        return bool(self.autoscaler_name and self.scale_target_name)

    def uses_object_metric(self) -> bool:
        """True when any declared metric is sourced from an object."""
        return any(
            (metric or {}).get("type") == MetricSourceType.OBJECT.value
            for metric in self.metrics
        )


@dataclass
class Function:
    """A Function declaration as seen in the watch cache."""
    name: str
    namespace: str
    spec: FunctionSpec = field(default_factory=FunctionSpec)
    uid: str = ""
    resource_version: str = ""
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name

    @classmethod
    def from_dict(cls, data: Any) -> "Function":
        """Decode a raw ``functions.k3sfn.io`` object.

        Raises:
            InvalidFunctionError: If the object is not a Function or is malformed
        """
        if not isinstance(data, dict):
            raise InvalidFunctionError(f"Expected a Function object, got {type(data).__name__}")
        kind = data.get("kind")
        if kind and kind != FUNCTION_KIND:
            raise InvalidFunctionError(f"Expected kind {FUNCTION_KIND}, got {kind}")

        metadata = _mapping(data.get("metadata"), "metadata")
        name = metadata.get("name")
        if not name:
            raise InvalidFunctionError("Function has no metadata.name")

        return cls(
            name=name,
            namespace=metadata.get("namespace", "") or "",
            spec=FunctionSpec.from_dict(data.get("spec")),
            uid=metadata.get("uid", "") or "",
            resource_version=metadata.get("resourceVersion", "") or "",
            labels=dict(_mapping(metadata.get("labels"), "metadata.labels")),
            annotations=dict(_mapping(metadata.get("annotations"), "metadata.annotations")),
        )
