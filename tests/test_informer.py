"""Tests for the Function informer cache."""

import time
from unittest.mock import MagicMock

import pytest
from kubernetes.client import ApiException

from k3sfnctl.informer import FunctionInformer, FunctionStore
from k3sfnctl.keys import DeletedFinalStateUnknown


class Recorder:
    def __init__(self):
        self.events = []

    def on_add(self, obj):
        self.events.append(("add", obj["metadata"]["name"]))

    def on_update(self, old, new):
        self.events.append(("update", new["metadata"]["name"]))

    def on_delete(self, obj):
        self.events.append(("delete", obj))


@pytest.fixture
def recorder(informer):
    rec = Recorder()
    informer.add_event_handler(rec.on_add, rec.on_update, rec.on_delete)
    return rec


def _listing(informer, *items, resource_version="10"):
    informer.custom_api.list_cluster_custom_object.return_value = {
        "items": list(items),
        "metadata": {"resourceVersion": resource_version},
    }


class TestFunctionStore:
    """Tests for FunctionStore."""

    def test_upsert_and_get(self, function_factory):
        store = FunctionStore()

        assert store.upsert(function_factory("a")) is None
        func, exists = store.get_by_key("default/a")

        assert exists is True
        assert func.name == "a"
        assert len(store) == 1

    def test_missing(self):
        assert FunctionStore().get_by_key("default/a") == (None, False)

    def test_replace(self, function_factory):
        store = FunctionStore()
        store.upsert(function_factory("a"))

        old = store.replace({"default/b": function_factory("b")})

        assert list(old) == ["default/a"]
        assert store.keys() == ["default/b"]


class TestRelist:
    """Tests for list-based cache refresh."""

    def test_initial_list(self, informer, recorder, function_factory):
        _listing(informer, function_factory("a"), function_factory("b"))
        assert informer.has_synced() is False

        informer.relist()

        assert informer.has_synced() is True
        assert informer.last_sync_resource_version() == "10"
        assert recorder.events == [("add", "a"), ("add", "b")]
        informer.custom_api.list_cluster_custom_object.assert_called_once_with(
            group="k3sfn.io", version="v1beta1", plural="functions", _request_timeout=30.0
        )

    def test_namespaced_list(self, function_factory):
        custom_api = MagicMock()
        custom_api.list_namespaced_custom_object.return_value = {"items": [function_factory("a", namespace="team")]}
        informer = FunctionInformer(custom_api, namespace="team")

        informer.relist()

        custom_api.list_namespaced_custom_object.assert_called_once_with(
            group="k3sfn.io", version="v1beta1", plural="functions", namespace="team", _request_timeout=30.0
        )
        assert informer.get_by_key("team/a")[1] is True

    def test_list_deadline(self):
        custom_api = MagicMock()
        custom_api.list_cluster_custom_object.return_value = {"items": []}
        informer = FunctionInformer(custom_api, request_timeout=2.5)

        informer.relist()

        assert custom_api.list_cluster_custom_object.call_args.kwargs["_request_timeout"] == 2.5

    def test_diff_against_previous_listing(self, informer, recorder, function_factory):
        _listing(informer, function_factory("a"), function_factory("b"), function_factory("c"))
        informer.relist()
        recorder.events.clear()

        _listing(informer, function_factory("a", resource_version="2"), function_factory("c"), resource_version="20")
        informer.relist()

        assert recorder.events[0] == ("update", "a")
        assert len(recorder.events) == 2
        _, tombstone = recorder.events[1]
        assert isinstance(tombstone, DeletedFinalStateUnknown)
        assert tombstone.key == "default/b"
        assert tombstone.obj["metadata"]["name"] == "b"
        assert informer.last_sync_resource_version() == "20"

    def test_nameless_items_skipped(self, informer, recorder, function_factory):
        _listing(informer, {"metadata": {}}, function_factory("a"))

        informer.relist()

        assert recorder.events == [("add", "a")]


class TestHandleEvent:
    """Tests for watch event handling."""

    def test_added_then_modified(self, informer, recorder, function_factory):
        informer.handle_event({"type": "ADDED", "object": function_factory("a")})
        informer.handle_event({"type": "MODIFIED", "object": function_factory("a", resource_version="2")})

        assert recorder.events == [("add", "a"), ("update", "a")]
        func, _ = informer.get_by_key("default/a")
        assert func.resource_version == "2"
        assert informer.last_sync_resource_version() == "2"

    def test_deleted(self, informer, recorder, function_factory):
        informer.handle_event({"type": "ADDED", "object": function_factory("a")})
        informer.handle_event({"type": "DELETED", "object": function_factory("a")})

        assert recorder.events[-1][0] == "delete"
        assert informer.get_by_key("default/a") == (None, False)

    def test_deleted_unknown_ignored(self, informer, recorder, function_factory):
        informer.handle_event({"type": "DELETED", "object": function_factory("a")})

        assert recorder.events == []

    def test_bookmark(self, informer, recorder):
        informer.handle_event({"type": "BOOKMARK", "object": {"metadata": {"resourceVersion": "99"}}})

        assert recorder.events == []
        assert informer.last_sync_resource_version() == "99"

    def test_error_raises(self, informer):
        with pytest.raises(ApiException) as exc_info:
            informer.handle_event({"type": "ERROR", "object": {"code": 410, "message": "too old"}})

        assert exc_info.value.status == 410

    def test_handler_failure_isolated(self, informer, function_factory):
        seen = []

        def broken(obj):
            raise RuntimeError("bug")

        informer.add_event_handler(on_add=broken)
        informer.add_event_handler(on_add=seen.append)

        informer.handle_event({"type": "ADDED", "object": function_factory("a")})

        assert len(seen) == 1


class TestLifecycle:
    """Tests for start/stop."""

    def test_stop_without_start(self, informer):
        informer.stop()
        informer.join(timeout=1)

    def test_start_lists_and_stops(self, informer, function_factory):
        _listing(informer, function_factory("a"))
        informer._run_watch_loop = lambda: informer._stop_event.wait(0.01)

        informer.start()
        for _ in range(200):
            if informer.has_synced():
                break
            time.sleep(0.01)
        informer.stop()
        informer.join(timeout=5)

        assert informer.has_synced()
        assert informer.get_by_key("default/a")[1] is True
