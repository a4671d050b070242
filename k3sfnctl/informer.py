"""
Watch source for Function resources.

Keeps an in-memory cache of ``functions.k3sfn.io`` objects via list + watch and
notifies registered handlers of adds, updates and deletes. The cache is written
only by the informer thread; readers get decoded copies.
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from kubernetes import watch
from kubernetes.client import ApiException, CustomObjectsApi

from .exceptions import InvalidKeyError
from .keys import DeletedFinalStateUnknown, meta_namespace_key
from .types import FUNCTION_GROUP, FUNCTION_PLURAL, FUNCTION_VERSION, Function

logger = logging.getLogger(__name__)

Handler = Callable[..., None]


@dataclass
class EventHandler:
    """Callbacks invoked for cache changes."""
    on_add: Optional[Handler] = None
    on_update: Optional[Handler] = None
    on_delete: Optional[Handler] = None


class FunctionStore:
    """Thread-safe cache of raw Function objects keyed by ``namespace/name``."""

    def __init__(self):
        self._items: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._items)

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._items)

    def get_by_key(self, key: str) -> Tuple[Optional[Function], bool]:
        """
        Look up a Function by key.

        Returns:
            ``(function, True)`` if cached, ``(None, False)`` otherwise

        Raises:
            InvalidFunctionError: If the cached object cannot be decoded
        """
        with self._lock:
            obj = self._items.get(key)
        if obj is None:
            return None, False
        return Function.from_dict(obj), True

    def upsert(self, obj: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Insert or replace an object; returns the previous one."""
        key = meta_namespace_key(obj)
        with self._lock:
            old = self._items.get(key)
            self._items[key] = obj
        return old

    def delete(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._items.pop(key, None)

    def replace(self, items: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        """Swap in a full listing; returns the previous contents."""
        with self._lock:
            old = self._items
            self._items = dict(items)
        return old


class FunctionInformer:
    """Maintain the Function cache via list + watch in a background thread."""

    def __init__(
        self,
        custom_api: CustomObjectsApi,
        namespace: Optional[str] = None,
        watch_timeout_seconds: int = 60,
        max_backoff_seconds: float = 30.0,
        request_timeout: float = 30.0,
    ):
        self.custom_api = custom_api
        self.namespace = namespace
        self.watch_timeout_seconds = watch_timeout_seconds
        self.max_backoff_seconds = max_backoff_seconds
        self.request_timeout = request_timeout

        self.store = FunctionStore()
        self._handlers: List[EventHandler] = []
        self._resource_version: Optional[str] = None
        self._has_synced = False
        self._needs_relist = True
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._watch: Optional[watch.Watch] = None
        self._watch_lock = threading.Lock()

    def add_event_handler(
        self,
        on_add: Optional[Handler] = None,
        on_update: Optional[Handler] = None,
        on_delete: Optional[Handler] = None,
    ) -> None:
        self._handlers.append(EventHandler(on_add, on_update, on_delete))

    def has_synced(self) -> bool:
        """True once the initial list has been loaded into the cache."""
        return self._has_synced

    def last_sync_resource_version(self) -> str:
        return self._resource_version or ""

    def get_by_key(self, key: str) -> Tuple[Optional[Function], bool]:
        return self.store.get_by_key(key)

    def start(self) -> None:
        """Start the background list/watch thread if not already running."""
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        scope = self.namespace or "all-namespaces"
        self._thread = threading.Thread(
            target=self._run,
            name=f"function-informer-{scope}",
            daemon=True,
        )
        self._thread.start()

    def stop(self) -> None:
        """Stop the background thread and interrupt an open watch."""
        self._stop_event.set()
        with self._watch_lock:
            if self._watch is not None:
                self._watch.stop()

    def join(self, timeout: Optional[float] = None) -> None:
        if self._thread:
            self._thread.join(timeout)

    def _list_kwargs(self) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "group": FUNCTION_GROUP,
            "version": FUNCTION_VERSION,
            "plural": FUNCTION_PLURAL,
        }
        if self.namespace:
            kwargs["namespace"] = self.namespace
        return kwargs

    def _list_fn(self) -> Callable[..., Any]:
        if self.namespace:
            return self.custom_api.list_namespaced_custom_object
        return self.custom_api.list_cluster_custom_object

    def _run(self) -> None:
        backoff = 1.0
        while not self._stop_event.is_set():
            try:
                if self._needs_relist:
                    self.relist()
                    backoff = 1.0
                self._run_watch_loop()
                backoff = 1.0
            except ApiException as exc:
                if exc.status == 410:
                    logger.info("Function watch expired, relisting")
                    self._resource_version = None
                    self._needs_relist = True
                    continue
                logger.warning(f"Function watch error: {exc}", exc_info=True)
                self._needs_relist = True
                self._stop_event.wait(backoff)
                backoff = min(backoff * 2, self.max_backoff_seconds)
            except Exception as exc:
                logger.warning(f"Unexpected Function informer error: {exc}", exc_info=True)
                self._needs_relist = True
                self._stop_event.wait(backoff)
                backoff = min(backoff * 2, self.max_backoff_seconds)

    def relist(self) -> None:
        """List all Functions, replace the cache and notify handlers of the diff."""
        resp = self._list_fn()(_request_timeout=self.request_timeout, **self._list_kwargs())
        items = resp.get("items", []) if isinstance(resp, dict) else []
        metadata = resp.get("metadata", {}) if isinstance(resp, dict) else {}

        new_items: Dict[str, Dict[str, Any]] = {}
        for item in items:
            try:
                new_items[meta_namespace_key(item)] = item
            except InvalidKeyError:
                logger.warning(f"Skipping Function without a name: {item!r}")

        old_items = self.store.replace(new_items)
        self._resource_version = metadata.get("resourceVersion") or self._resource_version
        self._needs_relist = False
        self._has_synced = True
        logger.debug(f"Listed {len(new_items)} Functions at resourceVersion {self._resource_version}")

        for key, obj in new_items.items():
            old = old_items.get(key)
            if old is None:
                self._dispatch("on_add", obj)
            elif _resource_version(old) != _resource_version(obj):
                self._dispatch("on_update", old, obj)
        for key, old in old_items.items():
            if key not in new_items:
                self._dispatch("on_delete", DeletedFinalStateUnknown(key=key, obj=old))

    def _run_watch_loop(self) -> None:
        """Stream watch events until the server closes the watch."""
        w = watch.Watch()
        with self._watch_lock:
            self._watch = w
        try:
            kwargs = self._list_kwargs()
            if self._resource_version:
                kwargs["resource_version"] = self._resource_version
            for event in w.stream(
                self._list_fn(),
                timeout_seconds=self.watch_timeout_seconds,
                allow_watch_bookmarks=True,
                **kwargs,
            ):
                if self._stop_event.is_set():
                    break
                self.handle_event(event)
        finally:
            w.stop()
            with self._watch_lock:
                self._watch = None

    def handle_event(self, event: Dict[str, Any]) -> None:
        """Apply one watch event to the cache and notify handlers."""
        event_type = event.get("type")
        obj = event.get("object")
        if obj is not None and not isinstance(obj, dict):
            obj = obj.to_dict()
        if not isinstance(obj, dict):
            return

        if event_type == "ERROR":
            raise ApiException(status=obj.get("code"), reason=obj.get("message"))

        resource_version = _resource_version(obj)
        if resource_version:
            self._resource_version = resource_version
        if event_type == "BOOKMARK":
            return

        if event_type == "DELETED":
            key = meta_namespace_key(obj)
            if self.store.delete(key) is not None:
                self._dispatch("on_delete", obj)
            return

        old = self.store.upsert(obj)
        if old is None:
            self._dispatch("on_add", obj)
        else:
            self._dispatch("on_update", old, obj)

    def _dispatch(self, callback: str, *args: Any) -> None:
        for handler in self._handlers:
            fn = getattr(handler, callback)
            if fn is None:
                continue
            try:
                fn(*args)
            except Exception:
                logger.exception(f"Function event handler {callback} failed")


def _resource_version(obj: Dict[str, Any]) -> str:
    return (obj.get("metadata") or {}).get("resourceVersion", "") or ""
