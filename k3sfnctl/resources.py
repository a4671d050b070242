"""
Kubernetes API access for managed Function resources.

Every call carries a request deadline. API failures are translated into the
controller's error types: 404 becomes NotFoundError, everything else (including
timeouts and connection errors) becomes TransientAPIError.
"""

import logging
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

import urllib3
from kubernetes import client
from kubernetes.client import ApiException

from .exceptions import DiscoveryError, NotFoundError, TransientAPIError
from .types import OwnerReference

logger = logging.getLogger(__name__)

MONITORING_GROUP = "monitoring.coreos.com"
MONITORING_VERSION = "v1"
SERVICE_MONITOR_PLURAL = "servicemonitors"

OWNED_KINDS = ("services", "deployments", "configmaps")


def _split_group_version(group_version: str) -> Tuple[str, str]:
    if "/" not in group_version:
        return "", group_version
    group, version = group_version.split("/", 1)
    return group, version


class ResourceClient:
    """Create, converge, delete and list the objects managed for Functions."""

    def __init__(
        self,
        api_client: Optional[client.ApiClient] = None,
        request_timeout: float = 30.0,
        monitoring_enabled: bool = False,
        core_api: Optional[client.CoreV1Api] = None,
        apps_api: Optional[client.AppsV1Api] = None,
        autoscaling_api: Optional[client.AutoscalingV2Api] = None,
        custom_api: Optional[client.CustomObjectsApi] = None,
        apis_api: Optional[client.ApisApi] = None,
    ):
        self.api_client = api_client or client.ApiClient()
        self.request_timeout = request_timeout
        self.monitoring_enabled = monitoring_enabled
        self.core_api = core_api or client.CoreV1Api(self.api_client)
        self.apps_api = apps_api or client.AppsV1Api(self.api_client)
        self.autoscaling_api = autoscaling_api or client.AutoscalingV2Api(self.api_client)
        self.custom_api = custom_api or client.CustomObjectsApi(self.api_client)
        self.apis_api = apis_api or client.ApisApi(self.api_client)
        self._group_versions: Dict[Tuple[str, str], str] = {}

    def _call(self, description: str, fn: Callable, *args: Any, **kwargs: Any) -> Any:
        try:
            return fn(*args, _request_timeout=self.request_timeout, **kwargs)
        except ApiException as e:
            if e.status == 404:
                raise NotFoundError(f"{description}: not found")
            raise TransientAPIError(f"{description}: {e.status} {e.reason}", status=e.status)
        except urllib3.exceptions.HTTPError as e:
            raise TransientAPIError(f"{description}: {e}")

    def _ensure(
        self,
        description: str,
        create: Callable[[], Any],
        patch: Callable[[], Any],
    ) -> None:
        """Create an object, converging it with a patch if it already exists."""
        try:
            self._call(f"create {description}", create)
            logger.info(f"Created {description}")
            return
        except TransientAPIError as e:
            if e.status != 409:
                raise
        self._call(f"patch {description}", patch)
        logger.debug(f"Converged {description}")

    def _delete(self, description: str, fn: Callable, *args: Any, **kwargs: Any) -> bool:
        """Delete an object; returns False if it was already gone."""
        try:
            self._call(f"delete {description}", fn, *args, **kwargs)
        except NotFoundError:
            return False
        logger.info(f"Deleted {description}")
        return True

    # ConfigMaps

    def read_config_map(self, namespace: str, name: str) -> Dict[str, str]:
        """Return a ConfigMap's data, raising NotFoundError if it does not exist."""
        cm = self._call(
            f"read configmap {namespace}/{name}",
            self.core_api.read_namespaced_config_map,
            name,
            namespace,
        )
        return dict(cm.data or {})

    def ensure_config_map(self, body: Dict[str, Any]) -> None:
        namespace, name = body["metadata"]["namespace"], body["metadata"]["name"]
        self._ensure(
            f"configmap {namespace}/{name}",
            lambda **kw: self.core_api.create_namespaced_config_map(namespace, body, **kw),
            lambda **kw: self.core_api.patch_namespaced_config_map(name, namespace, body, **kw),
        )

    def delete_config_map(self, namespace: str, name: str) -> bool:
        return self._delete(
            f"configmap {namespace}/{name}",
            self.core_api.delete_namespaced_config_map,
            name,
            namespace,
        )

    # Services

    def ensure_service(self, body: Dict[str, Any]) -> None:
        namespace, name = body["metadata"]["namespace"], body["metadata"]["name"]
        self._ensure(
            f"service {namespace}/{name}",
            lambda **kw: self.core_api.create_namespaced_service(namespace, body, **kw),
            lambda **kw: self.core_api.patch_namespaced_service(name, namespace, body, **kw),
        )

    def delete_service(self, namespace: str, name: str) -> bool:
        return self._delete(
            f"service {namespace}/{name}",
            self.core_api.delete_namespaced_service,
            name,
            namespace,
        )

    # Deployments

    def ensure_deployment(self, body: Dict[str, Any]) -> None:
        namespace, name = body["metadata"]["namespace"], body["metadata"]["name"]
        self._ensure(
            f"deployment {namespace}/{name}",
            lambda **kw: self.apps_api.create_namespaced_deployment(namespace, body, **kw),
            lambda **kw: self.apps_api.patch_namespaced_deployment(name, namespace, body, **kw),
        )

    def delete_deployment(self, namespace: str, name: str) -> bool:
        # Background propagation lets the platform clean up ReplicaSets and Pods
        return self._delete(
            f"deployment {namespace}/{name}",
            self.apps_api.delete_namespaced_deployment,
            name,
            namespace,
            body=client.V1DeleteOptions(propagation_policy="Background"),
        )

    # CronJobs

    def ensure_cron_job(self, group_version: str, body: Dict[str, Any]) -> None:
        group, version = _split_group_version(group_version)
        namespace, name = body["metadata"]["namespace"], body["metadata"]["name"]
        self._ensure(
            f"cronjob {namespace}/{name}",
            lambda **kw: self.custom_api.create_namespaced_custom_object(
                group, version, namespace, "cronjobs", body, **kw
            ),
            lambda **kw: self.custom_api.patch_namespaced_custom_object(
                group, version, namespace, "cronjobs", name, body, **kw
            ),
        )

    def cron_job_exists(self, group_version: str, namespace: str, name: str) -> bool:
        group, version = _split_group_version(group_version)
        try:
            self._call(
                f"read cronjob {namespace}/{name}",
                self.custom_api.get_namespaced_custom_object,
                group,
                version,
                namespace,
                "cronjobs",
                name,
            )
        except NotFoundError:
            return False
        return True

    def delete_cron_job(self, group_version: str, namespace: str, name: str) -> bool:
        group, version = _split_group_version(group_version)
        return self._delete(
            f"cronjob {namespace}/{name}",
            self.custom_api.delete_namespaced_custom_object,
            group,
            version,
            namespace,
            "cronjobs",
            name,
        )

    # Autoscalers

    def ensure_autoscaler(self, body: Dict[str, Any]) -> None:
        namespace, name = body["metadata"]["namespace"], body["metadata"]["name"]
        self._ensure(
            f"horizontalpodautoscaler {namespace}/{name}",
            lambda **kw: self.autoscaling_api.create_namespaced_horizontal_pod_autoscaler(
                namespace, body, **kw
            ),
            lambda **kw: self.autoscaling_api.patch_namespaced_horizontal_pod_autoscaler(
                name, namespace, body, **kw
            ),
        )

    def delete_autoscaler(self, namespace: str, name: str) -> bool:
        return self._delete(
            f"horizontalpodautoscaler {namespace}/{name}",
            self.autoscaling_api.delete_namespaced_horizontal_pod_autoscaler,
            name,
            namespace,
        )

    # ServiceMonitors

    def ensure_service_monitor(self, body: Dict[str, Any]) -> None:
        namespace, name = body["metadata"]["namespace"], body["metadata"]["name"]
        self._ensure(
            f"servicemonitor {namespace}/{name}",
            lambda **kw: self.custom_api.create_namespaced_custom_object(
                MONITORING_GROUP, MONITORING_VERSION, namespace, SERVICE_MONITOR_PLURAL, body, **kw
            ),
            lambda **kw: self.custom_api.patch_namespaced_custom_object(
                MONITORING_GROUP, MONITORING_VERSION, namespace, SERVICE_MONITOR_PLURAL, name, body, **kw
            ),
        )

    def delete_service_monitor(self, namespace: str, name: str) -> bool:
        return self._delete(
            f"servicemonitor {namespace}/{name}",
            self.custom_api.delete_namespaced_custom_object,
            MONITORING_GROUP,
            MONITORING_VERSION,
            namespace,
            SERVICE_MONITOR_PLURAL,
            name,
        )

    # Listing for the garbage-collection sweep

    def _list_fn(self, kind: str, namespace: Optional[str]) -> Callable[..., Any]:
        if kind == "services":
            if namespace:
                return lambda **kw: self.core_api.list_namespaced_service(namespace, **kw)
            return self.core_api.list_service_for_all_namespaces
        if kind == "deployments":
            if namespace:
                return lambda **kw: self.apps_api.list_namespaced_deployment(namespace, **kw)
            return self.apps_api.list_deployment_for_all_namespaces
        if kind == "configmaps":
            if namespace:
                return lambda **kw: self.core_api.list_namespaced_config_map(namespace, **kw)
            return self.core_api.list_config_map_for_all_namespaces
        raise ValueError(f"Unsupported kind: {kind}")

    def iter_owner_references(
        self,
        kind: str,
        namespace: Optional[str] = None,
        page_size: int = 500,
    ) -> Iterator[Tuple[str, List[OwnerReference]]]:
        """
        Yield ``(namespace, owner_references)`` for every object of a kind.

        Args:
            kind: One of ``services``, ``deployments``, ``configmaps``
            namespace: Restrict to one namespace (None lists all namespaces)
            page_size: List page size

        Yields:
            Namespace and owner references of each object that has any
        """
        list_fn = self._list_fn(kind, namespace)
        continue_token = None
        while True:
            kwargs: Dict[str, Any] = {"limit": page_size}
            if continue_token:
                kwargs["_continue"] = continue_token
            page = self._call(f"list {kind}", list_fn, **kwargs)
            for item in page.items or []:
                refs = item.metadata.owner_references or []
                if not refs:
                    continue
                yield item.metadata.namespace, [
                    OwnerReference(
                        api_version=ref.api_version or "",
                        kind=ref.kind or "",
                        name=ref.name or "",
                        uid=ref.uid or "",
                        controller=bool(ref.controller),
                        block_owner_deletion=bool(ref.block_owner_deletion),
                    )
                    for ref in refs
                ]
            continue_token = getattr(page.metadata, "_continue", None) if page.metadata else None
            if not continue_token:
                return

    # Discovery

    def _api_resource_names(self, group_version: str) -> List[str]:
        resources = self._call(
            f"discover {group_version}",
            self.api_client.call_api,
            f"/apis/{group_version}",
            "GET",
            header_params={"Accept": "application/json"},
            response_type="V1APIResourceList",
            auth_settings=["BearerToken"],
            _return_http_data_only=True,
        )
        return [resource.name for resource in resources.resources or []]

    def resource_group_version(self, group: str, plural: str) -> str:
        """
        Find the group/version serving a resource, preferring the server's
        preferred version.

        Raises:
            DiscoveryError: If discovery fails or no version serves the resource
        """
        cached = self._group_versions.get((group, plural))
        if cached:
            return cached

        try:
            group_list = self._call("list API groups", self.apis_api.get_api_versions)
            for api_group in group_list.groups or []:
                if api_group.name != group:
                    continue
                versions = [api_group.preferred_version] if api_group.preferred_version else []
                versions += [
                    v for v in api_group.versions or []
                    if not versions or v.group_version != versions[0].group_version
                ]
                for version in versions:
                    if plural in self._api_resource_names(version.group_version):
                        self._group_versions[(group, plural)] = version.group_version
                        return version.group_version
        except (NotFoundError, TransientAPIError) as e:
            raise DiscoveryError(f"Unable to discover {plural}.{group}: {e}")

        raise DiscoveryError(f"Resource {plural} not found in group {group}")
