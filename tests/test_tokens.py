"""
Tests for local user token secrets and their renewal timers
"""

# Standard
from datetime import datetime, timedelta, timezone

# Third Party
import pytest

# Local
from cdplane import constants
from cdplane.exceptions import WriteError
from cdplane.instance import instance_from_manifest
from cdplane.reconciler import Action
from cdplane.test_helpers.helpers import (
    TEST_NAMESPACE,
    MockObjectStore,
    library_config,
    setup_cr,
)
from cdplane.timers import TimerKey, TimerRegistry
from cdplane.tokens import (
    TOKEN_KEY,
    LocalUserTokenManager,
    get_token_expiry,
    token_secret_name,
)

## Helpers #####################################################################

IDENTITY = "test.test-instance"
SECRET_NAME = "test-instance-local-admin"
ADMIN_KEY = TimerKey(IDENTITY, "token/admin")


def make_instance(*users):
    local_users = [{"name": user, "tokenLifetime": "1h"} for user in users]
    return instance_from_manifest(setup_cr(spec={"localUsers": local_users}))


def token_secret(expiry, user="admin"):
    return {
        "kind": "Secret",
        "apiVersion": "v1",
        "metadata": {
            "name": f"test-instance-local-{user}",
            "namespace": TEST_NAMESPACE,
            "labels": {
                constants.INSTANCE_LABEL: IDENTITY,
                constants.TOKEN_USER_ANNOTATION: user,
            },
            "annotations": {constants.TOKEN_EXPIRY_ANNOTATION: expiry},
        },
        "data": {TOKEN_KEY: "b2xk"},
    }


def setup_manager(**store_kwargs):
    store = MockObjectStore(**store_kwargs)
    timers = TimerRegistry()
    return LocalUserTokenManager(store, timers), store, timers


## get_token_expiry ############################################################


def test_get_token_expiry():
    expiry = get_token_expiry(token_secret("2030-01-01T00:00:00+00:00"))
    assert expiry == datetime(2030, 1, 1, tzinfo=timezone.utc)


def test_get_token_expiry_naive_is_utc():
    expiry = get_token_expiry(token_secret("2030-01-01T00:00:00"))
    assert expiry.tzinfo is not None
    assert expiry == datetime(2030, 1, 1, tzinfo=timezone.utc)


@pytest.mark.parametrize("value", ["", "not a date"])
def test_get_token_expiry_invalid(value):
    assert get_token_expiry(token_secret(value)) is None
    assert get_token_expiry({"metadata": {}}) is None


## reconcile ###################################################################


def test_token_secret_name():
    assert token_secret_name(make_instance(), "admin") == SECRET_NAME


def test_create_token():
    """Make sure a new user gets a labeled, owned token secret and a renewal
    timer at its expiry
    """
    manager, store, timers = setup_manager()
    outcome = manager.reconcile(make_instance("admin"))
    assert outcome.actions == {"token/admin": Action.CREATED}

    secret = store.get_obj("Secret", SECRET_NAME, TEST_NAMESPACE)
    assert secret["data"][TOKEN_KEY]
    assert secret["metadata"]["labels"][constants.TOKEN_USER_ANNOTATION] == "admin"
    assert secret["metadata"]["ownerReferences"][0]["controller"]
    expiry = get_token_expiry(secret)
    assert (
        timedelta(minutes=59)
        < expiry - datetime.now(timezone.utc)
        <= timedelta(hours=1)
    )

    event = timers.get(ADMIN_KEY)
    assert event is not None
    assert event.time - datetime.now() > timedelta(minutes=59)


def test_valid_token_is_noop():
    """Make sure a second pass with an unexpired token makes no writes and
    keeps the scheduled renewal
    """
    manager, store, timers = setup_manager()
    manager.reconcile(make_instance("admin"))
    event = timers.get(ADMIN_KEY)
    store.reset_counts()

    outcome = manager.reconcile(make_instance("admin"))
    assert outcome.actions == {"token/admin": Action.NOOP}
    assert store.write_calls == 0
    assert timers.get(ADMIN_KEY) is event
    assert not event.stale


def test_expired_token_is_rotated():
    manager, store, timers = setup_manager(
        resources=[token_secret("2020-01-01T00:00:00+00:00")]
    )
    outcome = manager.reconcile(make_instance("admin"))
    assert outcome.actions == {"token/admin": Action.UPDATED}

    secret = store.get_obj("Secret", SECRET_NAME, TEST_NAMESPACE)
    assert secret["data"][TOKEN_KEY] != "b2xk"
    assert get_token_expiry(secret) > datetime.now(timezone.utc)
    assert timers.get(ADMIN_KEY) is not None


def test_existing_valid_token_gets_timer():
    """Make sure a token created before a restart gets its renewal timer back"""
    expiry = (datetime.now(timezone.utc) + timedelta(minutes=30)).isoformat()
    manager, store, timers = setup_manager(resources=[token_secret(expiry)])
    assert manager.reconcile(make_instance("admin")).actions == {
        "token/admin": Action.NOOP
    }
    assert store.write_calls == 0
    event = timers.get(ADMIN_KEY)
    assert timedelta(minutes=29) < event.time - datetime.now() <= timedelta(minutes=30)


def test_removed_user_is_cleaned_up():
    manager, store, timers = setup_manager()
    manager.reconcile(make_instance("admin", "viewer"))
    outcome = manager.reconcile(make_instance("viewer"))

    assert outcome.actions["token/admin"] is Action.DELETED
    assert not store.has_obj("Secret", SECRET_NAME, TEST_NAMESPACE)
    assert store.has_obj("Secret", "test-instance-local-viewer", TEST_NAMESPACE)
    assert timers.keys_for(IDENTITY) == [TimerKey(IDENTITY, "token/viewer")]


def test_disabled_user_is_cleaned_up():
    manager, store, timers = setup_manager()
    manager.reconcile(make_instance("admin"))
    instance = instance_from_manifest(
        setup_cr(spec={"localUsers": [{"name": "admin", "enabled": False}]})
    )
    assert manager.reconcile(instance).actions == {"token/admin": Action.DELETED}
    assert timers.keys_for(IDENTITY) == []


def test_write_failure_reported():
    manager, _, timers = setup_manager(create_fail=True)
    outcome = manager.reconcile(make_instance("admin"))
    assert list(outcome.failures) == ["token/admin"]
    assert timers.get(ADMIN_KEY) is None


## renew #######################################################################


def test_renew_rotates_token():
    expiry = (datetime.now(timezone.utc) + timedelta(minutes=1)).isoformat()
    manager, store, timers = setup_manager(resources=[token_secret(expiry)])
    manager.renew(make_instance("admin"), "admin", timedelta(hours=2))

    secret = store.get_obj("Secret", SECRET_NAME, TEST_NAMESPACE)
    assert secret["data"][TOKEN_KEY] != "b2xk"
    assert get_token_expiry(secret) - datetime.now(timezone.utc) > timedelta(hours=1)
    assert timers.get(ADMIN_KEY).time - datetime.now() > timedelta(hours=1)


def test_renew_failure_is_retried():
    """Make sure a failed renewal is rescheduled after the requeue period"""
    manager, _, timers = setup_manager(
        resources=[token_secret("2020-01-01T00:00:00+00:00")], update_fail=True
    )
    with library_config(requeue_after_seconds=30):
        manager.renew(make_instance("admin"), "admin", timedelta(hours=2))
    event = timers.get(ADMIN_KEY)
    assert event is not None
    assert event.time - datetime.now() <= timedelta(seconds=30)


def test_renew_after_teardown_is_skipped():
    """Make sure a renewal already running when the instance's timers are
    cancelled for teardown neither rotates the token nor schedules again
    """
    manager, store, timers = setup_manager()
    instance = make_instance("admin")
    manager.reconcile(instance)
    assert timers.keys_for(IDENTITY) == [ADMIN_KEY]

    timers.cancel_instance(IDENTITY, retire=True)
    store.reset_counts()
    manager.renew(instance, "admin", timedelta(hours=1))
    assert timers.keys_for(IDENTITY) == []
    assert store.write_calls == 0
    assert ADMIN_KEY not in manager._expiries


def test_teardown_during_renewal_leaves_no_timer():
    """Make sure a renewal that is mid-write when the instance is torn down
    does not schedule its next renewal
    """
    expiry = (datetime.now(timezone.utc) + timedelta(minutes=1)).isoformat()
    manager, store, timers = setup_manager(resources=[token_secret(expiry)])
    update = store.update_object.side_effect

    def teardown_then_update(*args, **kwargs):
        timers.cancel_instance(IDENTITY, retire=True)
        return update(*args, **kwargs)

    store.update_object.side_effect = teardown_then_update
    manager.renew(make_instance("admin"), "admin", timedelta(hours=2))
    assert store.update_object.call_count == 1
    assert timers.keys_for(IDENTITY) == []


def test_failed_renewal_not_retried_after_teardown():
    manager, store, timers = setup_manager(
        resources=[token_secret("2020-01-01T00:00:00+00:00")]
    )

    def teardown_then_fail(*_, **__):
        timers.cancel_instance(IDENTITY, retire=True)
        raise WriteError("update failed")

    store.update_object.side_effect = teardown_then_fail
    with library_config(requeue_after_seconds=30):
        manager.renew(make_instance("admin"), "admin", timedelta(hours=2))
    assert timers.get(ADMIN_KEY) is None


def test_reinstated_instance_renews_again():
    manager, _, timers = setup_manager()
    timers.cancel_instance(IDENTITY, retire=True)
    assert manager.reconcile(make_instance("admin")).actions == {
        "token/admin": Action.CREATED
    }
    assert timers.get(ADMIN_KEY) is None

    timers.reinstate(IDENTITY)
    manager.reconcile(make_instance("admin"))
    assert timers.get(ADMIN_KEY) is not None


def test_recorded_expiries_are_pruned():
    manager, _, timers = setup_manager()
    manager.reconcile(make_instance("admin", "viewer"))
    assert set(manager._expiries) == {ADMIN_KEY, TimerKey(IDENTITY, "token/viewer")}

    manager.reconcile(make_instance("viewer"))
    assert set(manager._expiries) == {TimerKey(IDENTITY, "token/viewer")}

    # Expiries of cancelled instances are dropped on the next reconcile
    timers.cancel_instance(IDENTITY)
    manager.reconcile(make_instance())
    assert manager._expiries == {}
