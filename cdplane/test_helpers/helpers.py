"""
This module holds common helper functions for making testing easy
"""

# Standard
from contextlib import contextmanager
from unittest import mock
import copy
import inspect
import os

# First Party
import alog

# Local
from cdplane import constants
from cdplane.config import library_config as config_detail_dict
from cdplane.exceptions import WriteError
from cdplane.store import DryRunObjectStore

log = alog.use_channel("TEST")


def configure_logging():
    alog.configure(
        os.environ.get("LOG_LEVEL", "off"),
        os.environ.get("LOG_FILTERS", ""),
        formatter="json"
        if os.environ.get("LOG_JSON", "").lower() == "true"
        else "pretty",
        thread_id=os.environ.get("LOG_THREAD_ID", "").lower() == "true",
    )


configure_logging()

TEST_INSTANCE_NAME = "test-instance"
TEST_INSTANCE_UID = "12345678-1234-1234-1234-123456789012"
TEST_NAMESPACE = "test"
SOME_OTHER_NAMESPACE = "somewhere"


def setup_cr(
    kind=constants.NAMESPACED_KIND,
    api_version=constants.API_VERSION,
    spec=None,
    name=TEST_INSTANCE_NAME,
    namespace=TEST_NAMESPACE,
    uid=TEST_INSTANCE_UID,
    **kwargs,
) -> dict:
    """Make an instance manifest. Cluster scoped kinds get no namespace."""
    cr_dict = copy.deepcopy(kwargs)
    cr_dict.setdefault("kind", kind)
    cr_dict.setdefault("apiVersion", api_version)
    metadata = cr_dict.setdefault("metadata", {})
    metadata.setdefault("name", name)
    if kind != constants.CLUSTER_KIND:
        metadata.setdefault("namespace", namespace)
    metadata.setdefault("uid", uid)
    cr_dict.setdefault("spec", {}).update(copy.deepcopy(spec or {}))
    return cr_dict


def make_namespace(name: str, labels=None, **metadata) -> dict:
    return {
        "kind": "Namespace",
        "apiVersion": "v1",
        "metadata": {"name": name, "labels": dict(labels or {}), **metadata},
    }


@contextmanager
def library_config(**config_overrides):
    """This context manager sets library config values temporarily and reverts
    them on completion
    """
    old_vals = {}
    for key, val in config_overrides.items():
        if key in config_detail_dict:
            old_vals[key] = config_detail_dict[key]
        config_detail_dict[key] = val
    try:
        yield
    finally:
        for key in config_overrides:
            if key in old_vals:
                config_detail_dict[key] = old_vals[key]
            else:
                del config_detail_dict[key]


def get_failable_method(fail_flag, method, failure_return=False):
    """Wrap a method so that it fails according to fail_flag. Exceptions are
    raised, callables are called with the method's arguments and their non-None
    result returned, "assert" raises an AssertionError and any other truthy
    value returns failure_return.
    """
    log.debug4(
        "Setting up failable mock of [%s] with fail flag: %s", str(method), fail_flag
    )

    def failable_method(*args, **kwargs):
        if isinstance(fail_flag, Exception) or (
            inspect.isclass(fail_flag) and issubclass(fail_flag, Exception)
        ):
            log.debug4("Raising in failable mock")
            raise fail_flag
        if callable(fail_flag):
            res = fail_flag(*args, **kwargs)
            if res is not None:
                return res
        elif fail_flag == "assert":
            raise AssertionError(f"You told me to fail {method}!")
        elif fail_flag:
            log.debug4("Returning %s", failure_return)
            return failure_return
        return method(*args, **kwargs)

    return failable_method


class FailOnce:
    """Helper callable that will fail once on the N'th call"""

    def __init__(self, fail_val, fail_number=1):
        self.call_count = 0
        self.fail_number = fail_number
        self.fail_val = fail_val

    def __call__(self, *_, **__):
        self.call_count += 1
        if self.call_count == self.fail_number:
            log.debug("Failing on call %d with %s", self.call_count, self.fail_val)
            if isinstance(self.fail_val, type) and issubclass(self.fail_val, Exception):
                raise self.fail_val("Raising!")
            if isinstance(self.fail_val, Exception):
                raise self.fail_val
            return self.fail_val
        return None


class FailForKind:
    """Helper callable that fails calls addressing one kind"""

    def __init__(self, kind, fail_val):
        self.kind = kind
        self.fail_val = fail_val

    def __call__(self, *args, **kwargs):
        kind = kwargs.get("kind")
        if kind is None and args:
            kind = args[0].get("kind") if isinstance(args[0], dict) else args[0]
        if kind != self.kind:
            return None
        if isinstance(self.fail_val, type) and issubclass(self.fail_val, Exception):
            raise self.fail_val(f"Failing {kind}")
        if isinstance(self.fail_val, Exception):
            raise self.fail_val
        return self.fail_val


def _write_fail_flag(fail_flag, operation):
    if fail_flag is True:
        return WriteError(f"Mock {operation} failure")
    return fail_flag


class MockObjectStore(DryRunObjectStore):
    """The MockObjectStore wraps a standard DryRunObjectStore and adds
    configuration options to simulate failures in each of its operations, and
    counts the write calls made against it.
    """

    WRITE_METHODS = ["create_object", "update_object", "delete_object", "set_status"]

    def __init__(
        self,
        get_state_fail=False,
        filter_fail=False,
        create_fail=False,
        update_fail=False,
        delete_fail=False,
        set_status_fail=False,
        served_kinds=None,
        resources=None,
        **kwargs,
    ):
        """This store can be configured with various failure cases and keeps
        the state of the cluster in a local dict. Write fail flags of True
        raise a WriteError.
        """
        resources = copy.deepcopy(resources or [])
        for resource in resources:
            resource.setdefault("apiVersion", "v1")
        super().__init__(resources, **kwargs)

        self.served_kinds = served_kinds
        self.get_state_fail = get_state_fail
        self.filter_fail = filter_fail
        self.create_fail = _write_fail_flag(create_fail, "create")
        self.update_fail = _write_fail_flag(update_fail, "update")
        self.delete_fail = _write_fail_flag(delete_fail, "delete")
        self.set_status_fail = set_status_fail
        self.enable_mocks()

    #######################
    ## Helpers for Tests ##
    #######################

    def enable_mocks(self):
        """Turn the mocks on"""
        self.get_object_current_state = mock.Mock(
            side_effect=get_failable_method(
                self.get_state_fail, super().get_object_current_state, (False, None)
            )
        )
        self.filter_objects_current_state = mock.Mock(
            side_effect=get_failable_method(
                self.filter_fail, super().filter_objects_current_state, (False, [])
            )
        )
        self.create_object = mock.Mock(
            side_effect=get_failable_method(self.create_fail, super().create_object)
        )
        self.update_object = mock.Mock(
            side_effect=get_failable_method(self.update_fail, super().update_object)
        )
        self.delete_object = mock.Mock(
            side_effect=get_failable_method(self.delete_fail, super().delete_object)
        )
        self.set_status = mock.Mock(
            side_effect=get_failable_method(
                self.set_status_fail, super().set_status, (False, False)
            )
        )

    @property
    def write_calls(self) -> int:
        """Total number of write calls made since the last reset"""
        return sum(getattr(self, name).call_count for name in self.WRITE_METHODS)

    def reset_counts(self):
        for name in self.WRITE_METHODS + [
            "get_object_current_state",
            "filter_objects_current_state",
        ]:
            getattr(self, name).reset_mock()

    def has_kind(self, kind, api_version=None):
        return self.served_kinds is None or kind in self.served_kinds

    def get_obj(self, kind, name, namespace=None, api_version=None):
        return self.get_object_current_state(
            kind=kind, name=name, namespace=namespace, api_version=api_version
        )[1]

    def has_obj(self, *args, **kwargs):
        return self.get_obj(*args, **kwargs) is not None

    def list_objs(self, kind, namespace=None, label_selector=None):
        return self.filter_objects_current_state(
            kind=kind, namespace=namespace, label_selector=label_selector
        )[1]
