"""Shared fixtures for k3sfnctl tests."""

import copy
from typing import Any, Dict, Iterator, List, Optional, Tuple
from unittest.mock import MagicMock

import pytest

from k3sfnctl.controller import Controller
from k3sfnctl.config import ControllerSettings
from k3sfnctl.exceptions import NotFoundError
from k3sfnctl.informer import FunctionInformer
from k3sfnctl.langruntime import LangRuntimes
from k3sfnctl.queue import ItemExponentialFailureRateLimiter, RateLimitingQueue
from k3sfnctl.types import OwnerReference

_PLURAL_KINDS = {
    "services": "service",
    "deployments": "deployment",
    "configmaps": "configmap",
}


class FakeResources:
    """In-memory stand-in for ResourceClient.

    Objects are stored by ``(kind, namespace, name)``. ``fail`` maps a method
    name to an exception raised on every call of that method.
    """

    def __init__(self, monitoring_enabled: bool = False, cron_group_version: str = "batch/v1"):
        self.monitoring_enabled = monitoring_enabled
        self.cron_group_version = cron_group_version
        self.objects: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.created: List[Tuple[str, str, str]] = []
        self.patched: List[Tuple[str, str, str]] = []
        self.deleted: List[Tuple[str, str, str]] = []
        self.fail: Dict[str, Exception] = {}
        self.calls: List[str] = []

    def _record(self, method: str) -> None:
        self.calls.append(method)
        if method in self.fail:
            raise self.fail[method]

    def _ensure(self, method: str, kind: str, body: Dict[str, Any]) -> None:
        self._record(method)
        key = (kind, body["metadata"]["namespace"], body["metadata"]["name"])
        if key in self.objects:
            self.patched.append(key)
        else:
            self.created.append(key)
        self.objects[key] = copy.deepcopy(body)

    def _delete(self, method: str, kind: str, namespace: str, name: str) -> bool:
        self._record(method)
        key = (kind, namespace, name)
        if self.objects.pop(key, None) is None:
            return False
        self.deleted.append(key)
        return True

    def put(self, kind: str, body: Dict[str, Any]) -> None:
        """Seed an object without recording a create."""
        key = (kind, body["metadata"]["namespace"], body["metadata"]["name"])
        self.objects[key] = copy.deepcopy(body)

    def kinds(self, namespace: str = "default") -> List[Tuple[str, str]]:
        return sorted((kind, name) for kind, ns, name in list(self.objects) if ns == namespace)

    def read_config_map(self, namespace: str, name: str) -> Dict[str, str]:
        self._record("read_config_map")
        obj = self.objects.get(("configmap", namespace, name))
        if obj is None:
            raise NotFoundError(f"read configmap {namespace}/{name}: not found")
        return dict(obj.get("data") or {})

    def ensure_config_map(self, body):
        self._ensure("ensure_config_map", "configmap", body)

    def delete_config_map(self, namespace, name):
        return self._delete("delete_config_map", "configmap", namespace, name)

    def ensure_service(self, body):
        self._ensure("ensure_service", "service", body)

    def delete_service(self, namespace, name):
        return self._delete("delete_service", "service", namespace, name)

    def ensure_deployment(self, body):
        self._ensure("ensure_deployment", "deployment", body)

    def delete_deployment(self, namespace, name):
        return self._delete("delete_deployment", "deployment", namespace, name)

    def ensure_cron_job(self, group_version, body):
        self._ensure("ensure_cron_job", "cronjob", body)

    def cron_job_exists(self, group_version, namespace, name):
        self._record("cron_job_exists")
        return ("cronjob", namespace, name) in self.objects

    def delete_cron_job(self, group_version, namespace, name):
        return self._delete("delete_cron_job", "cronjob", namespace, name)

    def ensure_autoscaler(self, body):
        self._ensure("ensure_autoscaler", "hpa", body)

    def delete_autoscaler(self, namespace, name):
        return self._delete("delete_autoscaler", "hpa", namespace, name)

    def ensure_service_monitor(self, body):
        self._ensure("ensure_service_monitor", "servicemonitor", body)

    def delete_service_monitor(self, namespace, name):
        return self._delete("delete_service_monitor", "servicemonitor", namespace, name)

    def iter_owner_references(
        self,
        kind: str,
        namespace: Optional[str] = None,
        page_size: int = 500,
    ) -> Iterator[Tuple[str, List[OwnerReference]]]:
        self._record(f"list_{kind}")
        singular = _PLURAL_KINDS[kind]
        for (obj_kind, ns, _), body in list(self.objects.items()):
            if obj_kind != singular or (namespace and ns != namespace):
                continue
            refs = body["metadata"].get("ownerReferences") or []
            if refs:
                yield ns, [OwnerReference.from_dict(ref) for ref in refs]

    def resource_group_version(self, group, plural):
        self._record("resource_group_version")
        return self.cron_group_version


def make_function(
    name: str = "hello",
    namespace: str = "default",
    resource_version: str = "1",
    **spec: Any,
) -> Dict[str, Any]:
    """Build a raw Function object as the API server returns it."""
    function_spec = {
        "handler": "handler.hello",
        "function": "def hello(event, context):\n    return 'hello'\n",
        "runtime": "python3.12",
        "type": "HTTP",
    }
    function_spec.update(spec)
    return {
        "apiVersion": "k3sfn.io/v1beta1",
        "kind": "Function",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": f"uid-{name}",
            "resourceVersion": resource_version,
        },
        "spec": function_spec,
    }


def object_metric_autoscaler(name: str = "hello") -> Dict[str, Any]:
    return {
        "metadata": {"name": name},
        "spec": {
            "scaleTargetRef": {"name": name},
            "minReplicas": 1,
            "maxReplicas": 5,
            "metrics": [
                {
                    "type": "Object",
                    "object": {
                        "describedObject": {"apiVersion": "v1", "kind": "Service", "name": name},
                        "metric": {"name": "function_calls"},
                        "target": {"type": "Value", "value": "100"},
                    },
                }
            ],
        },
    }


@pytest.fixture
def resources():
    return FakeResources()


@pytest.fixture
def informer():
    custom_api = MagicMock()
    custom_api.list_cluster_custom_object.return_value = {"items": [], "metadata": {"resourceVersion": "1"}}
    return FunctionInformer(custom_api)


@pytest.fixture
def queue():
    # No backoff delay so retried keys are immediately available
    return RateLimitingQueue(rate_limiter=ItemExponentialFailureRateLimiter(0.0, 0.0))


@pytest.fixture
def controller(informer, resources, queue):
    return Controller(informer, resources, LangRuntimes(), ControllerSettings(), queue=queue)


@pytest.fixture
def function_factory():
    return make_function


@pytest.fixture
def object_autoscaler():
    return object_metric_autoscaler
