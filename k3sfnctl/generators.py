"""
Kubernetes manifest generators for Function resources.

Generates ConfigMap, Service, Deployment, CronJob, HorizontalPodAutoscaler and
ServiceMonitor manifests. Generators are pure: they only read the Function and
return plain dicts that the ResourceClient applies.
"""

import copy
from typing import Any, Dict, List, Optional

import yaml

from .exceptions import ConfigParseError, InvalidFunctionError
from .keys import cron_job_name
from .langruntime import RuntimeInfo
from .types import FUNCTION_LABEL, MANAGED_LABEL, Function, OwnerReference, TriggerType

DEPLOYMENT_DEFAULTS_KEY = "deployment"

FUNCTION_PORT = 8080
FUNCTION_PORT_NAME = "http-function-port"
FUNCTION_MOUNT_PATH = "/function"
SOURCE_MOUNT_PATH = "/src"
CRON_IMAGE = "curlimages/curl:8.5.0"


def _labels(func: Function) -> Dict[str, str]:
    """Labels stamped on every object managed for a function."""
    return {
        **func.labels,
        FUNCTION_LABEL: func.name,
        MANAGED_LABEL: func.name,
    }


def _metadata(
    name: str,
    func: Function,
    owner_refs: List[OwnerReference],
    labels: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    return {
        "name": name,
        "namespace": func.namespace,
        "labels": labels if labels is not None else _labels(func),
        "ownerReferences": [ref.to_dict() for ref in owner_refs],
    }


def _module_name(func: Function) -> str:
    handler = func.spec.handler
    if "." not in handler:
        raise InvalidFunctionError(
            f"Function {func.key} handler must be <module>.<function>, got {handler!r}"
        )
    return handler.split(".", 1)[0]


def _merge_values(override: Any, default: Any) -> Any:
    if isinstance(override, dict) and isinstance(default, dict):
        merged = copy.deepcopy(default)
        for key, value in override.items():
            merged[key] = _merge_values(value, default.get(key)) if key in default else copy.deepcopy(value)
        return merged
    if isinstance(override, list) and isinstance(default, list):
        if not override:
            return copy.deepcopy(default)
        # Element-wise so a default for containers[0] applies to the function's container
        merged_list = []
        for index, value in enumerate(override):
            if index < len(default) and isinstance(value, dict) and isinstance(default[index], dict):
                merged_list.append(_merge_values(value, default[index]))
            else:
                merged_list.append(copy.deepcopy(value))
        return merged_list
    if override is None or override == "" or override == {}:
        return copy.deepcopy(default)
    return copy.deepcopy(override)


def merge_deployments(
    function_override: Optional[Dict[str, Any]],
    cluster_default: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    """
    Merge a function's deployment override with the cluster-wide default.

    Values set on the function win; unset (empty) values fall back to the default.

    Args:
        function_override: ``spec.deployment`` from the Function
        cluster_default: Deployment defaults from the controller ConfigMap

    Returns:
        Merged deployment dict

    Raises:
        ConfigParseError: If either side is not a mapping
    """
    if function_override is None:
        function_override = {}
    if cluster_default is None:
        cluster_default = {}
    if not isinstance(function_override, dict):
        raise ConfigParseError("Function deployment override must be a mapping")
    if not isinstance(cluster_default, dict):
        raise ConfigParseError("Default deployment must be a mapping")
    return _merge_values(function_override, cluster_default)


def load_deployment_defaults(data: Optional[Dict[str, str]]) -> Dict[str, Any]:
    """Parse the ``deployment`` key of the controller ConfigMap data."""
    raw = (data or {}).get(DEPLOYMENT_DEFAULTS_KEY)
    if not raw:
        return {}
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError as e:
        raise ConfigParseError(f"Error parsing deployment defaults: {e}")
    if parsed is None:
        return {}
    if not isinstance(parsed, dict):
        raise ConfigParseError(
            f"Deployment defaults must be a mapping, got {type(parsed).__name__}"
        )
    return parsed


def generate_configmap(
    func: Function,
    owner_refs: List[OwnerReference],
    runtime: RuntimeInfo,
) -> Dict[str, Any]:
    """Generate the ConfigMap holding the function source, handler and deps."""
    module = _module_name(func)
    data = {
        "handler": func.spec.handler,
        f"{module}{runtime.file_suffix}": func.spec.function,
    }
    if func.spec.deps and runtime.deps_file:
        data[runtime.deps_file] = func.spec.deps

    return {
        "apiVersion": "v1",
        "kind": "ConfigMap",
        "metadata": _metadata(func.name, func, owner_refs),
        "data": data,
    }


def generate_service(func: Function, owner_refs: List[OwnerReference]) -> Dict[str, Any]:
    """Generate the Service exposing the function pods."""
    spec = copy.deepcopy(func.spec.service)
    if not spec.get("ports"):
        spec["ports"] = [
            {
                "name": FUNCTION_PORT_NAME,
                "port": FUNCTION_PORT,
                "targetPort": FUNCTION_PORT,
                "protocol": "TCP",
            }
        ]
    if not spec.get("selector"):
        spec["selector"] = {FUNCTION_LABEL: func.name}
    spec.setdefault("type", "ClusterIP")

    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": _metadata(func.name, func, owner_refs),
        "spec": spec,
    }


def _build_env(func: Function, runtime: RuntimeInfo, existing: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    env = [copy.deepcopy(var) for var in existing]
    names = {var.get("name") for var in env}
    ours = [
        {"name": "FUNC_HANDLER", "value": func.spec.handler.split(".", 1)[-1]},
        {"name": "MOD_NAME", "value": _module_name(func)},
        {"name": "FUNC_TIMEOUT", "value": func.spec.timeout or "180"},
        {"name": "FUNC_RUNTIME", "value": runtime.runtime},
        {"name": "FUNC_PORT", "value": str(FUNCTION_PORT)},
    ]
    if func.spec.type == TriggerType.PUBSUB and func.spec.topic:
        ours.append({"name": "TOPIC_NAME", "value": func.spec.topic})
    for var in ours:
        if var["name"] not in names:
            env.append(var)
    return env


def _build_init_container(func: Function, runtime: RuntimeInfo) -> Dict[str, Any]:
    script = f"cp {SOURCE_MOUNT_PATH}/* {FUNCTION_MOUNT_PATH}/"
    if func.spec.deps and runtime.build_command:
        script = f"{script} && {runtime.build_command}"
    return {
        "name": "prepare",
        "image": runtime.init_image,
        "command": ["sh", "-c", script],
        "volumeMounts": [
            {"name": "src", "mountPath": SOURCE_MOUNT_PATH},
            {"name": "function", "mountPath": FUNCTION_MOUNT_PATH},
        ],
    }


def generate_deployment(
    func: Function,
    owner_refs: List[OwnerReference],
    runtime: RuntimeInfo,
    deployment_override: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Generate the Deployment running the function.

    Args:
        func: Function declaration
        owner_refs: Owner references for the Function
        runtime: Resolved runtime images
        deployment_override: Merged deployment override used as the base object

    Returns:
        Deployment manifest dict
    """
    base = copy.deepcopy(deployment_override or {})
    labels = _labels(func)

    base_meta = base.get("metadata") or {}
    metadata = _metadata(func.name, func, owner_refs, {**(base_meta.get("labels") or {}), **labels})
    if base_meta.get("annotations"):
        metadata["annotations"] = base_meta["annotations"]

    spec = base.get("spec") or {}
    spec.setdefault("replicas", 1)
    spec["selector"] = {"matchLabels": {FUNCTION_LABEL: func.name}}

    template = spec.get("template") or {}
    template_meta = template.get("metadata") or {}
    template_meta["labels"] = {**(template_meta.get("labels") or {}), **labels}
    if func.spec.checksum:
        template_meta["annotations"] = {
            **(template_meta.get("annotations") or {}),
            "k3sfn.io/checksum": func.spec.checksum,
        }
    template["metadata"] = template_meta

    pod_spec = template.get("spec") or {}
    containers = pod_spec.get("containers") or [{}]
    container = containers[0]
    container["name"] = func.name
    container.setdefault("image", runtime.image)
    if runtime.run_command and not container.get("command"):
        container["command"] = list(runtime.run_command)
    container["ports"] = [{"name": FUNCTION_PORT_NAME, "containerPort": FUNCTION_PORT}]
    container["env"] = _build_env(func, runtime, container.get("env") or [])
    container["volumeMounts"] = [
        mount for mount in container.get("volumeMounts") or [] if mount.get("name") != "function"
    ] + [{"name": "function", "mountPath": FUNCTION_MOUNT_PATH}]
    container.setdefault("readinessProbe", {
        "httpGet": {"path": "/ready", "port": FUNCTION_PORT},
        "initialDelaySeconds": 1,
        "periodSeconds": 2,
    })
    container.setdefault("livenessProbe", {
        "httpGet": {"path": "/live", "port": FUNCTION_PORT},
        "initialDelaySeconds": 5,
        "periodSeconds": 10,
    })
    containers[0] = container
    pod_spec["containers"] = containers

    pod_spec["initContainers"] = [
        c for c in pod_spec.get("initContainers") or [] if c.get("name") != "prepare"
    ] + [_build_init_container(func, runtime)]
    pod_spec["volumes"] = [
        v for v in pod_spec.get("volumes") or [] if v.get("name") not in ("src", "function")
    ] + [
        {"name": "src", "configMap": {"name": func.name}},
        {"name": "function", "emptyDir": {}},
    ]
    template["spec"] = pod_spec
    spec["template"] = template

    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": metadata,
        "spec": spec,
    }


def generate_cronjob(
    func: Function,
    owner_refs: List[OwnerReference],
    group_version: str = "batch/v1",
) -> Dict[str, Any]:
    """Generate the CronJob that calls a scheduled function's Service."""
    if not func.spec.schedule:
        raise InvalidFunctionError(f"Function {func.key} is scheduled but has no schedule")

    url = f"http://{func.name}.{func.namespace}.svc.cluster.local:{FUNCTION_PORT}"
    return {
        "apiVersion": group_version,
        "kind": "CronJob",
        "metadata": _metadata(cron_job_name(func.name), func, owner_refs),
        "spec": {
            "schedule": func.spec.schedule,
            "concurrencyPolicy": "Forbid",
            "successfulJobsHistoryLimit": 3,
            "failedJobsHistoryLimit": 1,
            "jobTemplate": {
                "spec": {
                    "template": {
                        "metadata": {"labels": _labels(func)},
                        "spec": {
                            "restartPolicy": "Never",
                            "containers": [
                                {
                                    "name": "trigger",
                                    "image": CRON_IMAGE,
                                    "args": ["curl", "-Lv", "-X", "POST", url],
                                }
                            ],
                        },
                    },
                },
            },
        },
    }


def generate_autoscaler(func: Function, owner_refs: List[OwnerReference]) -> Dict[str, Any]:
    """Generate the HorizontalPodAutoscaler declared on the function."""
    hpa = copy.deepcopy(func.spec.horizontal_pod_autoscaler)
    hpa_meta = hpa.get("metadata") or {}
    hpa_meta["namespace"] = func.namespace
    hpa_meta["labels"] = {**(hpa_meta.get("labels") or {}), **_labels(func)}
    hpa_meta["ownerReferences"] = [ref.to_dict() for ref in owner_refs]

    hpa_spec = hpa.get("spec") or {}
    hpa_spec["scaleTargetRef"] = {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        **(hpa_spec.get("scaleTargetRef") or {}),
    }

    return {
        "apiVersion": "autoscaling/v2",
        "kind": "HorizontalPodAutoscaler",
        "metadata": hpa_meta,
        "spec": hpa_spec,
    }


def generate_service_monitor(func: Function, owner_refs: List[OwnerReference]) -> Dict[str, Any]:
    """Generate a Prometheus ServiceMonitor scraping the function Service."""
    return {
        "apiVersion": "monitoring.coreos.com/v1",
        "kind": "ServiceMonitor",
        "metadata": _metadata(func.name, func, owner_refs),
        "spec": {
            "selector": {"matchLabels": {FUNCTION_LABEL: func.name}},
            "namespaceSelector": {"matchNames": [func.namespace]},
            "endpoints": [{"port": FUNCTION_PORT_NAME}],
        },
    }
