"""Tests for the InstanceController"""

# Standard
from datetime import timedelta

# Third Party
import pytest

# First Party
import alog

# Local
from cdplane import constants
from cdplane.controller import AVAILABLE_MESSAGE, InstanceController
from cdplane.exceptions import (
    ClusterError,
    PartialCascadeFailure,
    ReadError,
    ValidationError,
    WriteConflictError,
    WriteError,
)
from cdplane.status import RECONCILED_CONDITION, Phase, get_condition
from cdplane.test_helpers.helpers import (
    TEST_NAMESPACE,
    FailForKind,
    MockObjectStore,
    library_config,
    make_namespace,
    setup_cr,
)
from cdplane.timers import TimerKey

log = alog.use_channel("TEST")

################################################################################
## Helpers #####################################################################
################################################################################

INSTANCE_KEY = f"{TEST_NAMESPACE}/test-instance"
IDENTITY = f"{TEST_NAMESPACE}.test-instance"


def setup_controller(spec=None, extra_resources=None, **store_kwargs):
    store = MockObjectStore(
        resources=[setup_cr(spec=spec)] + (extra_resources or []), **store_kwargs
    )
    return InstanceController(store), store


def get_instance(store, name="test-instance", namespace=TEST_NAMESPACE):
    kind = constants.NAMESPACED_KIND if namespace else constants.CLUSTER_KIND
    return store.get_obj(kind, name, namespace, constants.API_VERSION)


def update_spec(store, **spec_updates):
    """Simulate a user edit of the instance spec"""
    obj = get_instance(store)
    obj["spec"].update(spec_updates)
    obj.pop("status", None)
    store.update_object(obj)


def check_status(store, phase, message=None):
    obj = get_instance(store)
    assert obj is not None
    assert obj["status"]["phase"] == phase.value
    condition = get_condition(RECONCILED_CONDITION, obj["status"])
    assert condition["status"] == str(phase is Phase.AVAILABLE)
    if message is not None:
        assert message in condition["message"]


################################################################################
## Tests #######################################################################
################################################################################

## Helpers #####################################################################


def test_parse_key():
    assert InstanceController.parse_key("ns/name") == (
        constants.NAMESPACED_KIND,
        "ns",
        "name",
    )
    assert InstanceController.parse_key("name") == (
        constants.CLUSTER_KIND,
        None,
        "name",
    )


def test_generate_id():
    first = InstanceController.generate_id()
    assert len(first) == 22
    assert first != InstanceController.generate_id()


## Happy Path ##################################################################


def test_reconcile_new_instance():
    """Make sure a new instance gets its finalizer, its children and an
    available status
    """
    ctrlr, store = setup_controller()
    result = ctrlr.reconcile(INSTANCE_KEY)
    assert not result.requeue
    assert result.error is None

    obj = get_instance(store)
    assert obj["metadata"]["finalizers"] == [constants.FINALIZER_NAME]
    check_status(store, Phase.AVAILABLE, AVAILABLE_MESSAGE)
    assert store.has_obj("Deployment", "test-instance-server", TEST_NAMESPACE)
    assert store.has_obj("ClusterRole", "test-instance-test-server")
    assert ctrlr.registry.get_phase(IDENTITY) is Phase.AVAILABLE


def test_second_pass_makes_no_writes():
    """Make sure reconciling a converged instance issues no writes at all"""
    ctrlr, store = setup_controller(
        spec={
            "sourceNamespaces": ["team-a"],
            "applicationSet": {"enabled": True, "sourceNamespaces": ["team-a"]},
            "notifications": {"enabled": True},
            "ha": {"enabled": True},
            "localUsers": [{"name": "admin"}],
        },
        extra_resources=[make_namespace("team-a")],
    )
    assert ctrlr.reconcile(INSTANCE_KEY).error is None
    store.reset_counts()

    result = ctrlr.reconcile(INSTANCE_KEY)
    assert result.error is None
    assert not result.requeue
    assert store.write_calls == 0


def test_disable_and_enable_component():
    """Make sure disabling a component removes its objects and enabling it
    again recreates them
    """
    ctrlr, store = setup_controller(spec={"applicationSet": {"enabled": True}})
    ctrlr.reconcile(INSTANCE_KEY)
    name = "test-instance-applicationset-controller"
    assert store.has_obj("Deployment", name, TEST_NAMESPACE)

    update_spec(store, applicationSet={"enabled": False})
    assert ctrlr.reconcile(INSTANCE_KEY).error is None
    assert not store.has_obj("Deployment", name, TEST_NAMESPACE)
    assert not store.has_obj("ServiceAccount", name, TEST_NAMESPACE)
    check_status(store, Phase.AVAILABLE)

    update_spec(store, applicationSet={"enabled": True})
    assert ctrlr.reconcile(INSTANCE_KEY).error is None
    assert store.has_obj("Deployment", name, TEST_NAMESPACE)


def test_cluster_scoped_instance():
    store = MockObjectStore(
        resources=[
            setup_cr(kind=constants.CLUSTER_KIND, spec={"targetNamespace": "cd-system"})
        ]
    )
    ctrlr = InstanceController(store)
    result = ctrlr.reconcile("test-instance")
    assert result.error is None

    deployment = store.get_obj("Deployment", "test-instance-server", "cd-system")
    assert deployment["metadata"]["labels"][constants.INSTANCE_LABEL] == "test-instance"
    assert store.has_obj("ClusterRole", "test-instance-cd-system-server")
    assert ctrlr.registry.get_phase("test-instance") is Phase.AVAILABLE


## Deletion ####################################################################


def test_delete_instance_cascade():
    """Make sure deleting an instance releases its claims, deletes its cluster
    scoped objects, cancels its timers and lets the instance go
    """
    ctrlr, store = setup_controller(
        spec={"sourceNamespaces": ["team-a"], "localUsers": [{"name": "admin"}]},
        extra_resources=[make_namespace("team-a")],
    )
    ctrlr.reconcile(INSTANCE_KEY)
    assert ctrlr.timers.keys_for(IDENTITY)
    assert store.get_obj("Namespace", "team-a")["metadata"]["labels"]

    store.delete_object(
        constants.NAMESPACED_KIND, "test-instance", TEST_NAMESPACE
    )
    result = ctrlr.reconcile(INSTANCE_KEY)
    assert result.error is None
    assert not result.requeue

    assert get_instance(store) is None
    assert not store.has_obj("Deployment", "test-instance-server", TEST_NAMESPACE)
    assert not store.has_obj("ClusterRole", "test-instance-test-server")
    assert store.get_obj("Namespace", "team-a")["metadata"]["labels"] == {}
    assert store.list_objs("Role", "team-a") == []
    assert ctrlr.timers.keys_for(IDENTITY) == []
    assert ctrlr.registry.count() == 0


def test_delete_instance_with_three_source_namespaces():
    """Make sure deleting an instance that claims three source namespaces
    under every claim kind leaves no claim labels and no RBAC in any of them
    """
    namespaces = ["team-a", "team-b", "team-c"]
    claim_labels = [
        constants.APPS_CLAIM_LABEL,
        constants.APPSETS_CLAIM_LABEL,
        constants.NOTIFICATIONS_CLAIM_LABEL,
    ]
    ctrlr, store = setup_controller(
        spec={
            "sourceNamespaces": namespaces,
            "applicationSet": {"enabled": True, "sourceNamespaces": namespaces},
            "notifications": {"enabled": True, "sourceNamespaces": namespaces},
        },
        extra_resources=[make_namespace(name) for name in namespaces],
    )
    assert ctrlr.reconcile(INSTANCE_KEY).error is None
    for name in namespaces:
        labels = store.get_obj("Namespace", name)["metadata"]["labels"]
        assert {label: labels.get(label) for label in claim_labels} == {
            label: IDENTITY for label in claim_labels
        }
        assert store.list_objs("Role", name)
        assert store.list_objs("RoleBinding", name)

    store.delete_object(constants.NAMESPACED_KIND, "test-instance", TEST_NAMESPACE)
    assert ctrlr.reconcile(INSTANCE_KEY).error is None
    assert get_instance(store) is None
    for name in namespaces:
        labels = store.get_obj("Namespace", name)["metadata"].get("labels") or {}
        assert not set(labels) & set(claim_labels)
        assert store.list_objs("Role", name) == []
        assert store.list_objs("RoleBinding", name) == []


def test_app_sets_claim_on_namespace_of_other_instance():
    """Make sure an instance listing a namespace another instance holds under
    apps creates no RBAC there and leaves its labels untouched
    """
    store = MockObjectStore(
        resources=[
            setup_cr(
                name="first", uid="first-uid", spec={"sourceNamespaces": ["ns1"]}
            ),
            setup_cr(
                name="second",
                uid="second-uid",
                spec={
                    "applicationSet": {"enabled": True, "sourceNamespaces": ["ns1"]}
                },
            ),
            make_namespace("ns1"),
        ]
    )
    ctrlr = InstanceController(store)
    assert ctrlr.reconcile(f"{TEST_NAMESPACE}/first").error is None
    labels_before = dict(store.get_obj("Namespace", "ns1")["metadata"]["labels"])
    rbac_before = {
        kind: sorted(obj["metadata"]["name"] for obj in store.list_objs(kind, "ns1"))
        for kind in ["Role", "RoleBinding"]
    }

    assert ctrlr.reconcile(f"{TEST_NAMESPACE}/second").error is None
    assert store.get_obj("Namespace", "ns1")["metadata"]["labels"] == labels_before
    for kind, names in rbac_before.items():
        current = sorted(
            obj["metadata"]["name"] for obj in store.list_objs(kind, "ns1")
        )
        assert current == names
        assert not [name for name in current if name.startswith("second-")]


def test_deleted_instance_timers_are_retired():
    """Make sure the timers of a deleted instance stay retired and that a new
    instance with the same identity gets its timers again
    """
    ctrlr, store = setup_controller(spec={"localUsers": [{"name": "admin"}]})
    ctrlr.reconcile(INSTANCE_KEY)
    store.delete_object(constants.NAMESPACED_KIND, "test-instance", TEST_NAMESPACE)
    ctrlr.reconcile(INSTANCE_KEY)
    assert ctrlr.timers.is_retired(IDENTITY)

    store.create_object(setup_cr(spec={"localUsers": [{"name": "admin"}]}))
    assert ctrlr.reconcile(INSTANCE_KEY).error is None
    assert not ctrlr.timers.is_retired(IDENTITY)
    assert ctrlr.timers.keys_for(IDENTITY) == [TimerKey(IDENTITY, "token/admin")]


def test_delete_cascade_failure_requeues():
    ctrlr, store = setup_controller()
    ctrlr.reconcile(INSTANCE_KEY)
    store.delete_object(
        constants.NAMESPACED_KIND, "test-instance", TEST_NAMESPACE
    )
    store.delete_fail = FailForKind("ClusterRole", WriteError)
    store.enable_mocks()

    with library_config(requeue_after_seconds=7):
        result = ctrlr.reconcile(INSTANCE_KEY)
    assert isinstance(result.error, PartialCascadeFailure)
    assert result.requeue_after == 7
    check_status(store, Phase.UNKNOWN)
    assert constants.FINALIZER_NAME in get_instance(store)["metadata"]["finalizers"]

    store.delete_fail = False
    store.enable_mocks()
    assert ctrlr.reconcile(INSTANCE_KEY).error is None
    assert get_instance(store) is None


def test_missing_instance_cleans_up():
    ctrlr, store = setup_controller()
    store.delete_object(constants.NAMESPACED_KIND, "test-instance", TEST_NAMESPACE)
    ctrlr.registry.set_phase(IDENTITY, Phase.AVAILABLE)
    ctrlr.timers.schedule(
        TimerKey(IDENTITY, "token/admin"), timedelta(hours=1), lambda: None
    )

    result = ctrlr.reconcile(INSTANCE_KEY)
    assert not result.requeue
    assert result.error is None
    assert ctrlr.timers.keys_for(IDENTITY) == []
    assert ctrlr.registry.get_phase(IDENTITY) is None


## Errors ######################################################################


def test_invalid_spec_is_fatal():
    """Make sure an invalid spec sets the Failed phase and is not requeued"""
    ctrlr, store = setup_controller(spec={"sourceNamespaces": ["Not_Valid"]})
    result = ctrlr.reconcile(INSTANCE_KEY)
    assert isinstance(result.error, ValidationError)
    assert not result.requeue
    check_status(store, Phase.FAILED, "Not_Valid")
    assert not store.has_obj("Deployment", "test-instance-server", TEST_NAMESPACE)


@pytest.mark.parametrize(
    ["selector", "message"],
    [
        ("team=platform", "do not match"),
        ("team in platform", "Malformed"),
    ],
)
def test_instance_label_selector(selector, message):
    ctrlr, store = setup_controller()
    with library_config(instance_label_selector=selector):
        result = ctrlr.reconcile(INSTANCE_KEY)
    assert isinstance(result.error, ValidationError)
    assert not result.requeue
    check_status(store, Phase.FAILED, message)
    assert "finalizers" not in get_instance(store)["metadata"]


def test_instance_label_selector_skips_deletion_cascade():
    """Make sure a deleting instance that does not match the selector is left
    to the operator whose selector it matches
    """
    ctrlr, store = setup_controller(
        spec={"sourceNamespaces": ["team-a"]},
        extra_resources=[make_namespace("team-a")],
    )
    ctrlr.reconcile(INSTANCE_KEY)
    store.delete_object(constants.NAMESPACED_KIND, "test-instance", TEST_NAMESPACE)
    store.reset_counts()

    with library_config(instance_label_selector="team=platform"):
        result = ctrlr.reconcile(INSTANCE_KEY)
    assert isinstance(result.error, ValidationError)
    assert constants.FINALIZER_NAME in get_instance(store)["metadata"]["finalizers"]
    assert store.get_obj("Namespace", "team-a")["metadata"]["labels"]
    assert store.has_obj("ClusterRole", "test-instance-test-server")
    assert store.delete_object.call_count == 0


def test_instance_label_selector_match():
    store = MockObjectStore(
        resources=[setup_cr(metadata={"labels": {"team": "platform"}})]
    )
    ctrlr = InstanceController(store)
    with library_config(instance_label_selector="team=platform"):
        assert ctrlr.reconcile(INSTANCE_KEY).error is None
    check_status(store, Phase.AVAILABLE)


def test_read_failure_requeues():
    ctrlr, _ = setup_controller(get_state_fail=True)
    with library_config(requeue_after_seconds=3):
        result = ctrlr.reconcile(INSTANCE_KEY)
    assert isinstance(result.error, ReadError)
    assert result.requeue_after == 3


def test_conflict_requeues_quickly():
    """Make sure a conflict on the instance itself is retried after the
    conflict delay without writing status
    """
    ctrlr, store = setup_controller(update_fail=WriteConflictError("conflict"))
    with library_config(conflict_requeue_seconds=1):
        result = ctrlr.reconcile(INSTANCE_KEY)
    assert isinstance(result.error, WriteConflictError)
    assert result.requeue_after == 1
    assert store.set_status.call_count == 0


def test_child_conflicts_requeue_without_status():
    ctrlr, store = setup_controller(
        create_fail=FailForKind("Service", WriteConflictError)
    )
    with library_config(conflict_requeue_seconds=1):
        result = ctrlr.reconcile(INSTANCE_KEY)
    assert result.error is None
    assert result.requeue_after == 1
    assert store.set_status.call_count == 0
    assert store.has_obj("Deployment", "test-instance-server", TEST_NAMESPACE)
    assert ctrlr.registry.get_phase(IDENTITY) is Phase.PENDING


def test_child_failures_set_failed():
    """Make sure a failed child is reported in status while the other
    children are still reconciled
    """
    ctrlr, store = setup_controller(
        create_fail=FailForKind("Deployment", WriteError)
    )
    with library_config(requeue_after_seconds=5):
        result = ctrlr.reconcile(INSTANCE_KEY)
    assert isinstance(result.error, ClusterError)
    assert result.requeue_after == 5
    check_status(
        store, Phase.FAILED, f"Deployment/{TEST_NAMESPACE}/test-instance-server"
    )
    assert store.has_obj("Service", "test-instance-server", TEST_NAMESPACE)
    assert ctrlr.registry.get_phase(IDENTITY) is Phase.FAILED

    # Recovery clears the failure
    store.create_fail = False
    store.enable_mocks()
    assert ctrlr.reconcile(INSTANCE_KEY).error is None
    check_status(store, Phase.AVAILABLE)
