"""
Tests for the DryRunObjectStore
"""

# Standard
from threading import Thread
import time

# Third Party
import pytest

# Local
from cdplane.exceptions import WriteConflictError, WriteError
from cdplane.store import DryRunObjectStore, WatchEventType
from cdplane.test_helpers.helpers import TEST_NAMESPACE

## Helpers #####################################################################


def make_obj(kind="ConfigMap", name="foo", namespace=TEST_NAMESPACE, **kwargs):
    metadata = {"name": name, **kwargs.pop("metadata", {})}
    if namespace is not None:
        metadata["namespace"] = namespace
    return {"kind": kind, "apiVersion": "v1", "metadata": metadata, **kwargs}


## Reads #######################################################################


def test_get_missing_object():
    """Make sure a missing object is a successful read of None"""
    assert DryRunObjectStore().get_object_current_state(
        "ConfigMap", "foo", TEST_NAMESPACE
    ) == (True, None)


def test_prepopulated_resources():
    store = DryRunObjectStore([make_obj(data={"a": "b"})])
    success, obj = store.get_object_current_state("ConfigMap", "foo", TEST_NAMESPACE)
    assert success
    assert obj["data"] == {"a": "b"}
    assert obj["metadata"]["uid"]
    assert obj["metadata"]["resourceVersion"]


def test_get_returns_copy():
    store = DryRunObjectStore([make_obj()])
    _, obj = store.get_object_current_state("ConfigMap", "foo", TEST_NAMESPACE)
    obj["metadata"]["name"] = "changed"
    _, obj = store.get_object_current_state("ConfigMap", "foo", TEST_NAMESPACE)
    assert obj["metadata"]["name"] == "foo"


def test_api_version_filter():
    store = DryRunObjectStore([make_obj()])
    _, obj = store.get_object_current_state("ConfigMap", "foo", TEST_NAMESPACE, "v2")
    assert obj is None
    _, obj = store.get_object_current_state("ConfigMap", "foo", TEST_NAMESPACE, "v1")
    assert obj is not None


def test_filter_objects_by_label_selector():
    store = DryRunObjectStore(
        [
            make_obj(name="a", metadata={"labels": {"team": "x"}}),
            make_obj(name="b", metadata={"labels": {"team": "y"}}),
            make_obj(name="c", namespace="other", metadata={"labels": {"team": "x"}}),
        ]
    )
    success, objs = store.filter_objects_current_state(
        "ConfigMap", TEST_NAMESPACE, label_selector="team=x"
    )
    assert success
    assert [obj["metadata"]["name"] for obj in objs] == ["a"]


def test_filter_objects_by_field_selector():
    store = DryRunObjectStore(
        [make_obj(name="a", data={"k": "1"}), make_obj(name="b", data={"k": "2"})]
    )
    _, objs = store.filter_objects_current_state(
        "ConfigMap", TEST_NAMESPACE, field_selector="data.k=2"
    )
    assert [obj["metadata"]["name"] for obj in objs] == ["b"]


def test_cluster_scoped_objects():
    store = DryRunObjectStore([make_obj(kind="Namespace", name="ns", namespace=None)])
    assert store.get_object_current_state("Namespace", "ns")[1] is not None
    assert len(store.filter_objects_current_state("Namespace")[1]) == 1


## Writes ######################################################################


def test_create_object():
    store = DryRunObjectStore()
    created = store.create_object(make_obj())
    assert created["metadata"]["uid"]
    assert created["metadata"]["creationTimestamp"]
    assert store.get_object_current_state("ConfigMap", "foo", TEST_NAMESPACE)[1]


def test_create_existing_object_conflicts():
    store = DryRunObjectStore([make_obj()])
    with pytest.raises(WriteConflictError):
        store.create_object(make_obj())


def test_update_object():
    """Make sure updates bump the resourceVersion and keep server fields"""
    store = DryRunObjectStore([make_obj(data={"a": "1"})])
    _, current = store.get_object_current_state("ConfigMap", "foo", TEST_NAMESPACE)
    current["data"] = {"a": "2"}
    updated = store.update_object(current)
    assert updated["data"] == {"a": "2"}
    assert updated["metadata"]["uid"] == current["metadata"]["uid"]
    assert (
        updated["metadata"]["resourceVersion"]
        != current["metadata"]["resourceVersion"]
    )


def test_update_missing_object():
    with pytest.raises(WriteError):
        DryRunObjectStore().update_object(make_obj())


def test_update_stale_resource_version():
    """Make sure an update based on a stale read is rejected"""
    store = DryRunObjectStore([make_obj()])
    _, first = store.get_object_current_state("ConfigMap", "foo", TEST_NAMESPACE)
    _, second = store.get_object_current_state("ConfigMap", "foo", TEST_NAMESPACE)
    second["data"] = {"x": "y"}
    store.update_object(second)
    first["data"] = {"x": "z"}
    with pytest.raises(WriteConflictError):
        store.update_object(first)


def test_update_without_strict_resource_version():
    store = DryRunObjectStore([make_obj()], strict_resource_version=False)
    obj = make_obj(data={"x": "y"})
    obj["metadata"]["resourceVersion"] = "stale"
    assert store.update_object(obj)["data"] == {"x": "y"}


def test_update_preserves_status():
    store = DryRunObjectStore([make_obj(status={"phase": "Available"})])
    updated = store.update_object(make_obj(data={"a": "b"}))
    assert updated["status"] == {"phase": "Available"}


def test_delete_object():
    store = DryRunObjectStore([make_obj()])
    assert store.delete_object("ConfigMap", "foo", TEST_NAMESPACE)
    assert store.get_object_current_state("ConfigMap", "foo", TEST_NAMESPACE)[1] is None
    assert not store.delete_object("ConfigMap", "foo", TEST_NAMESPACE)


def test_delete_with_finalizer():
    """Make sure objects with finalizers are only marked for deletion and are
    removed once their finalizers are cleared
    """
    store = DryRunObjectStore([make_obj(metadata={"finalizers": ["x"]})])
    assert store.delete_object("ConfigMap", "foo", TEST_NAMESPACE)
    _, obj = store.get_object_current_state("ConfigMap", "foo", TEST_NAMESPACE)
    assert obj["metadata"]["deletionTimestamp"]

    obj["metadata"]["finalizers"] = []
    store.update_object(obj)
    assert store.get_object_current_state("ConfigMap", "foo", TEST_NAMESPACE)[1] is None


def test_delete_collects_owned_children():
    """Make sure children with a controller reference to a removed owner are
    removed and other children are left alone
    """
    owner = make_obj(kind="Owner", name="owner", metadata={"uid": "owner-uid"})
    owned = make_obj(
        name="owned",
        metadata={"ownerReferences": [{"uid": "owner-uid", "controller": True}]},
    )
    referenced = make_obj(
        name="referenced",
        metadata={"ownerReferences": [{"uid": "owner-uid"}]},
    )
    store = DryRunObjectStore([owner, owned, referenced])
    store.delete_object("Owner", "owner", TEST_NAMESPACE)
    _, owned = store.get_object_current_state("ConfigMap", "owned", TEST_NAMESPACE)
    assert owned is None
    assert store.get_object_current_state("ConfigMap", "referenced", TEST_NAMESPACE)[1]


def test_set_status():
    store = DryRunObjectStore([make_obj()])
    assert store.set_status("ConfigMap", "foo", TEST_NAMESPACE, {"a": 1}) == (
        True,
        True,
    )
    assert store.set_status("ConfigMap", "foo", TEST_NAMESPACE, {"a": 1}) == (
        True,
        False,
    )
    assert store.set_status("ConfigMap", "bar", TEST_NAMESPACE, {"a": 1}) == (
        False,
        False,
    )


## Watches #####################################################################


def test_watch_objects():
    """Make sure existing objects are reported as added and later changes are
    streamed
    """
    store = DryRunObjectStore([make_obj(name="a")])
    events = []

    def watch():
        for event in store.watch_objects("ConfigMap", timeout=1):
            events.append(event)
            if len(events) == 3:
                return

    thread = Thread(target=watch)
    thread.start()
    time.sleep(0.2)
    store.create_object(make_obj(name="b"))
    store.delete_object("ConfigMap", "a", TEST_NAMESPACE)
    thread.join(timeout=5)
    assert not thread.is_alive()
    assert [(event.type, event.resource["metadata"]["name"]) for event in events] == [
        (WatchEventType.ADDED, "a"),
        (WatchEventType.ADDED, "b"),
        (WatchEventType.DELETED, "a"),
    ]


def test_watch_filters_kind():
    store = DryRunObjectStore([make_obj(name="a"), make_obj(kind="Secret")])
    events = list(store.watch_objects("Secret", timeout=0.1))
    assert [event.resource["kind"] for event in events] == ["Secret"]
