"""
Function controller.

Watches Function declarations and keeps their ConfigMap, Service, Deployment,
CronJob, HorizontalPodAutoscaler and ServiceMonitor in sync. Keys flow from the
informer into a rate-limited queue drained by a single worker; failed keys are
retried with exponential backoff up to ``max_retries`` times.

At startup, once the cache has synced, a garbage-collection sweep queues the
owning key of every object that points back at a Function. Keys whose Function
no longer exists then go through the normal delete path.
"""

import logging
import threading
from typing import Any, Dict, Optional, Set

from .config import ControllerSettings
from .exceptions import ControllerError, DiscoveryError, InvalidKeyError, NotFoundError
from .generators import (
    generate_autoscaler,
    generate_configmap,
    generate_cronjob,
    generate_deployment,
    generate_service,
    generate_service_monitor,
    load_deployment_defaults,
    merge_deployments,
)
from .keys import (
    cron_job_name,
    deletion_handling_key,
    meta_namespace_key,
    owner_reference,
    owning_function_key,
    split_key,
)
from .langruntime import LangRuntimes
from .queue import RateLimitingQueue
from .resources import OWNED_KINDS, ResourceClient
from .types import FUNCTION_LABEL, Function, TriggerType

logger = logging.getLogger(__name__)

CRON_JOB_GROUP = "batch"
CRON_JOB_PLURAL = "cronjobs"


class Controller:
    """Reconciles Function declarations into managed Kubernetes objects."""

    def __init__(
        self,
        informer: Any,
        resources: ResourceClient,
        runtimes: LangRuntimes,
        settings: Optional[ControllerSettings] = None,
        queue: Optional[RateLimitingQueue] = None,
    ):
        self.informer = informer
        self.resources = resources
        self.runtimes = runtimes
        self.settings = settings if settings is not None else ControllerSettings()
        self.queue = queue if queue is not None else RateLimitingQueue()

        informer.add_event_handler(
            on_add=self._on_add,
            on_update=self._on_update,
            on_delete=self._on_delete,
        )

    # Event handlers

    def _enqueue(self, obj: Any, key_fn=meta_namespace_key) -> None:
        try:
            key = key_fn(obj)
        except InvalidKeyError as e:
            logger.warning(f"Ignoring event for object without a key: {e}")
            return
        self.queue.add(key)

    def _on_add(self, obj: Any) -> None:
        self._enqueue(obj)

    def _on_update(self, old: Any, new: Any) -> None:
        self._enqueue(new)

    def _on_delete(self, obj: Any) -> None:
        self._enqueue(obj, deletion_handling_key)

    # Readiness

    def has_synced(self) -> bool:
        return self.informer.has_synced()

    def last_sync_resource_version(self) -> str:
        return self.informer.last_sync_resource_version()

    # Main loop

    def wait_for_cache_sync(self, stop_event: threading.Event, poll_interval: float = 0.1) -> bool:
        """Block until the informer has synced; False if stopped first."""
        while not self.informer.has_synced():
            if stop_event.wait(poll_interval):
                return False
        return True

    def run(self, stop_event: threading.Event) -> None:
        """Run the controller until ``stop_event`` is set."""
        logger.info("Starting k3sfn controller")
        self.informer.start()
        worker: Optional[threading.Thread] = None
        try:
            if not self.wait_for_cache_sync(stop_event):
                logger.error("Stopped before the Function cache synced")
                return
            logger.info("k3sfn controller synced and ready")

            # Catch objects orphaned while the controller was down
            self._sweep()

            worker = threading.Thread(target=self.run_worker, name="k3sfnctl-worker", daemon=True)
            worker.start()

            if self.settings.gc_interval > 0:
                threading.Thread(
                    target=self._periodic_sweep,
                    args=(stop_event,),
                    name="k3sfnctl-gc",
                    daemon=True,
                ).start()

            stop_event.wait()
        finally:
            logger.info("Stopping k3sfn controller")
            self.informer.stop()
            self.queue.shut_down(drain=True)
            if worker is not None:
                worker.join()

    def run_worker(self) -> None:
        while self.process_next_item():
            pass

    def process_next_item(self) -> bool:
        """Process one key from the queue; False once the queue is shut down."""
        key, shutdown = self.queue.get()
        if shutdown:
            return False
        try:
            self.process_item(key)
        except ControllerError as err:
            self._handle_error(key, err)
        except Exception as err:
            logger.exception(f"Unexpected error processing {key}")
            self._handle_error(key, err)
        else:
            self.queue.forget(key)
        finally:
            self.queue.done(key)
        return True

    def _handle_error(self, key: str, err: Exception) -> None:
        if not getattr(err, "retryable", True):
            logger.error(f"Error processing {key} (not retrying): {err}")
            self.queue.forget(key)
        elif self.queue.num_requeues(key) < self.settings.max_retries:
            logger.error(f"Error processing {key} (will retry): {err}")
            self.queue.add_rate_limited(key)
        else:
            logger.error(f"Error processing {key} (giving up): {err}")
            self.queue.forget(key)

    def process_item(self, key: str) -> None:
        """Reconcile one Function key against the current cache."""
        logger.info(f"Processing change to Function {key}")
        namespace, name = split_key(key)

        func, exists = self.informer.get_by_key(key)
        if not exists:
            self.delete_k8s_resources(namespace, name)
            logger.info(f"Deleted Function {key}")
            return

        self.ensure_k8s_resources(func)
        logger.info(f"Updated Function {key}")

    # Ensure path

    def _deployment_defaults(self) -> Dict[str, Any]:
        try:
            data = self.resources.read_config_map(
                self.settings.config_namespace, self.settings.config_name
            )
        except NotFoundError:
            return {}
        return load_deployment_defaults(data)

    def _cron_job_group_version(self) -> str:
        return self.resources.resource_group_version(CRON_JOB_GROUP, CRON_JOB_PLURAL)

    def ensure_k8s_resources(self, func: Function) -> None:
        """Create or converge every object managed for ``func``."""
        func.labels[FUNCTION_LABEL] = func.name

        deployment = merge_deployments(func.spec.deployment, self._deployment_defaults())
        func.spec.deployment = deployment

        owner_refs = owner_reference(func)
        runtime = self.runtimes.get(func.spec.runtime)

        self.resources.ensure_config_map(generate_configmap(func, owner_refs, runtime))
        self.resources.ensure_service(generate_service(func, owner_refs))
        self.resources.ensure_deployment(generate_deployment(func, owner_refs, runtime, deployment))

        if func.spec.type == TriggerType.SCHEDULED:
            group_version = self._cron_job_group_version()
            self.resources.ensure_cron_job(
                group_version, generate_cronjob(func, owner_refs, group_version)
            )

        if func.spec.has_autoscaler:
            if func.spec.uses_object_metric():
                if self.resources.monitoring_enabled:
                    self.resources.ensure_service_monitor(generate_service_monitor(func, owner_refs))
                else:
                    logger.warning(
                        f"Function {func.key} scales on an object metric but ServiceMonitors "
                        "are disabled; skipping the ServiceMonitor"
                    )
            self.resources.ensure_autoscaler(generate_autoscaler(func, owner_refs))
        else:
            self.delete_autoscale(func.namespace, func.name)

    # Delete path

    def delete_autoscale(self, namespace: str, name: str) -> None:
        if self.resources.monitoring_enabled:
            self.resources.delete_service_monitor(namespace, name)
        self.resources.delete_autoscaler(namespace, name)

    def delete_k8s_resources(self, namespace: str, name: str) -> None:
        """Delete every object managed for a Function that no longer exists.

        A CronJob discovery failure does not block the other deletes; it is
        raised afterwards so the key is retried.
        """
        discovery_error: Optional[DiscoveryError] = None
        try:
            group_version = self._cron_job_group_version()
        except DiscoveryError as e:
            logger.warning(f"Skipping CronJob cleanup for {namespace}/{name}: {e}")
            discovery_error = e
        else:
            trigger = cron_job_name(name)
            if self.resources.cron_job_exists(group_version, namespace, trigger):
                self.resources.delete_cron_job(group_version, namespace, trigger)

        self.resources.delete_deployment(namespace, name)
        self.resources.delete_service(namespace, name)
        self.resources.delete_config_map(namespace, name)
        self.delete_autoscale(namespace, name)

        if discovery_error is not None:
            raise discovery_error

    # Garbage collection

    def garbage_collect(self, enqueue: bool = True) -> Set[str]:
        """
        Queue the owning Function key of every managed Service, Deployment
        and ConfigMap.

        Args:
            enqueue: Add the keys to the work queue (False only reports them)

        Returns:
            Keys found across all kinds

        Raises:
            ControllerError: The first listing failure, after every kind was tried
        """
        keys: Set[str] = set()
        first_error: Optional[ControllerError] = None
        for kind in OWNED_KINDS:
            try:
                for namespace, refs in self.resources.iter_owner_references(kind, self.settings.namespace):
                    key = owning_function_key(namespace, refs)
                    if key is None:
                        continue
                    keys.add(key)
                    if enqueue:
                        self.queue.add(key)
            except ControllerError as e:
                logger.error(f"Garbage collection of {kind} failed: {e}")
                first_error = first_error or e

        logger.info(f"Garbage collection found {len(keys)} Functions with managed objects")
        if first_error is not None:
            raise first_error
        return keys

    def _sweep(self) -> None:
        try:
            self.garbage_collect()
        except ControllerError as e:
            logger.error(f"Garbage collection incomplete: {e}")

    def _periodic_sweep(self, stop_event: threading.Event) -> None:
        while not stop_event.wait(self.settings.gc_interval):
            self._sweep()
