"""
Local user tokens. Every enabled local user of an instance gets a token Secret
whose expiry is recorded in an annotation. A renewal timer fires at expiry,
rotates the token and schedules the next renewal. Users removed from the
instance spec have their timer cancelled and their Secret deleted.
"""

# Standard
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional
import base64
import copy
import secrets
import threading

# Third Party
from dateutil import parser as date_parser

# First Party
import alog

# Local
from . import config, constants
from .descriptor import ChildResourceDescriptor
from .exceptions import ClusterError, assert_read
from .instance import ManagedInstance
from .ownership import OwnershipRegistrar
from .reconciler import Action, ReconcileOutcome
from .store import ObjectStoreBase
from .timers import TimerKey, TimerRegistry

log = alog.use_channel("TOKEN")

# Prefix of the timer sub-identity used for token renewals
TOKEN_TIMER_PREFIX = "token/"

# Key of the token in the Secret data
TOKEN_KEY = "apiToken"


def token_secret_name(instance: ManagedInstance, user_name: str) -> str:
    return OwnershipRegistrar.resource_name(instance, f"local-{user_name}")


def token_timer_key(instance: ManagedInstance, user_name: str) -> TimerKey:
    return TimerKey(instance.identity, f"{TOKEN_TIMER_PREFIX}{user_name}")


def get_token_expiry(secret: dict) -> Optional[datetime]:
    """Parse the expiry annotation of a token Secret. Returns None if it is
    missing or unparseable.
    """
    value = (secret.get("metadata", {}).get("annotations") or {}).get(
        constants.TOKEN_EXPIRY_ANNOTATION
    )
    if not value:
        return None
    try:
        expiry = date_parser.isoparse(value)
    except ValueError:
        log.warning("Unparseable token expiry [%s]", value)
        return None
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    return expiry


class LocalUserTokenManager:
    """Keeps the token Secrets and renewal timers of local users in sync with
    an instance's spec
    """

    def __init__(
        self,
        store: ObjectStoreBase,
        timers: TimerRegistry,
        registrar: Optional[OwnershipRegistrar] = None,
    ):
        self.store = store
        self.timers = timers
        self.registrar = registrar or OwnershipRegistrar()
        self._expiries: Dict[TimerKey, datetime] = {}
        self._expiries_lock = threading.Lock()

    @alog.logged_function(log.debug2)
    def reconcile(self, instance: ManagedInstance) -> ReconcileOutcome:
        """Ensure a valid token and renewal timer for every enabled local user
        and clean up the users that were removed

        Args:
            instance:  ManagedInstance
                The instance whose users are reconciled

        Returns:
            outcome:  ReconcileOutcome
                Actions and errors keyed by "token/<user>"
        """
        self._prune_expiries()
        outcome = ReconcileOutcome()
        users = {user["name"]: user["tokenLifetime"] for user in instance.local_users()}
        for user_name, lifetime in sorted(users.items()):
            key = f"{TOKEN_TIMER_PREFIX}{user_name}"
            try:
                outcome.actions[key] = self.ensure_token(instance, user_name, lifetime)
            except ClusterError as err:
                log.warning(
                    "Failed to reconcile token for %s/%s: %s", instance, user_name, err
                )
                outcome.errors[key] = err

        try:
            outcome.merge(self.remove_stale_users(instance, set(users)))
        except ClusterError as err:
            outcome.errors[f"{TOKEN_TIMER_PREFIX}*"] = err
        return outcome

    def ensure_token(
        self,
        instance: ManagedInstance,
        user_name: str,
        lifetime: timedelta,
    ) -> Action:
        """Make sure the user has an unexpired token and a renewal timer"""
        name = token_secret_name(instance, user_name)
        success, secret = self.store.get_object_current_state(
            kind="Secret",
            name=name,
            namespace=instance.target_namespace,
            api_version="v1",
        )
        assert_read(success, f"Failed to read token secret {name}")

        action = Action.NOOP
        expiry = get_token_expiry(secret) if secret is not None else None
        if expiry is None or expiry <= datetime.now(timezone.utc):
            expiry = self._write_token(instance, user_name, lifetime, secret)
            action = Action.CREATED if secret is None else Action.UPDATED

        self._schedule_renewal(instance, user_name, lifetime, expiry)
        return action

    def renew(self, instance: ManagedInstance, user_name: str, lifetime: timedelta):
        """Rotate a user's token and schedule the next renewal. Runs on the
        timer thread. Failures are retried after the requeue period.
        """
        if self.timers.is_retired(instance.identity):
            log.debug(
                "Skipping token renewal of %s for retired %s", user_name, instance
            )
            self._forget_expiry(token_timer_key(instance, user_name))
            return
        log.info("Renewing token for local user %s of %s", user_name, instance)
        name = token_secret_name(instance, user_name)
        try:
            success, secret = self.store.get_object_current_state(
                kind="Secret",
                name=name,
                namespace=instance.target_namespace,
                api_version="v1",
            )
            assert_read(success, f"Failed to read token secret {name}")
            expiry = self._write_token(instance, user_name, lifetime, secret)
        except ClusterError as err:
            log.warning("Token renewal for %s/%s failed: %s", instance, user_name, err)
            self.timers.schedule(
                token_timer_key(instance, user_name),
                timedelta(seconds=config.requeue_after_seconds),
                self.renew,
                instance,
                user_name,
                lifetime,
            )
            return
        self._schedule_renewal(instance, user_name, lifetime, expiry)

    def remove_stale_users(
        self, instance: ManagedInstance, active_users: set
    ) -> ReconcileOutcome:
        """Cancel timers and delete Secrets of users no longer enabled"""
        outcome = ReconcileOutcome()
        for timer_key in self.timers.keys_for(instance.identity):
            if not timer_key.sub_identity.startswith(TOKEN_TIMER_PREFIX):
                continue
            user_name = timer_key.sub_identity[len(TOKEN_TIMER_PREFIX) :]
            if user_name not in active_users:
                log.debug("Cancelling token renewal for removed user %s", user_name)
                self.timers.cancel(timer_key)
                self._forget_expiry(timer_key)

        for secret in self._list_token_secrets(instance):
            user_name = secret["metadata"]["labels"][constants.TOKEN_USER_ANNOTATION]
            if user_name in active_users:
                continue
            log.info(
                "Deleting token of removed local user %s of %s", user_name, instance
            )
            self.store.delete_object(
                kind="Secret",
                name=secret["metadata"]["name"],
                namespace=instance.target_namespace,
                api_version="v1",
            )
            outcome.actions[f"{TOKEN_TIMER_PREFIX}{user_name}"] = Action.DELETED
        return outcome

    ## Implementation Details ##################################################

    def _list_token_secrets(self, instance: ManagedInstance) -> List[dict]:
        selector = (
            f"{constants.INSTANCE_LABEL}={instance.identity},"
            f"{constants.TOKEN_USER_ANNOTATION}"
        )
        success, found = self.store.filter_objects_current_state(
            kind="Secret",
            namespace=instance.target_namespace,
            api_version="v1",
            label_selector=selector,
        )
        assert_read(success, f"Failed to list token secrets of {instance}")
        return found

    def _write_token(
        self,
        instance: ManagedInstance,
        user_name: str,
        lifetime: timedelta,
        existing: Optional[dict],
    ) -> datetime:
        expiry = datetime.now(timezone.utc) + lifetime
        name = token_secret_name(instance, user_name)
        token = secrets.token_urlsafe(32)
        desired = {
            "metadata": {
                "labels": {constants.TOKEN_USER_ANNOTATION: user_name},
                "annotations": {
                    constants.TOKEN_EXPIRY_ANNOTATION: expiry.isoformat(),
                    constants.TOKEN_USER_ANNOTATION: user_name,
                },
            },
            "type": "Opaque",
            "data": {
                TOKEN_KEY: base64.b64encode(token.encode("utf-8")).decode("utf-8")
            },
        }
        descriptor = ChildResourceDescriptor(
            kind="Secret",
            api_version="v1",
            name=name,
            namespace=instance.target_namespace,
            desired=desired,
        )
        self.registrar.register(instance, descriptor, existing)

        if existing is None:
            log.debug("Creating token secret %s", name)
            self.store.create_object(descriptor.desired)
        else:
            updated = copy.deepcopy(existing)
            metadata = updated.setdefault("metadata", {})
            for section in ["labels", "annotations"]:
                metadata[section] = {
                    **(metadata.get(section) or {}),
                    **descriptor.desired["metadata"].get(section, {}),
                }
            if "ownerReferences" in descriptor.desired["metadata"]:
                metadata["ownerReferences"] = descriptor.desired["metadata"][
                    "ownerReferences"
                ]
            updated["data"] = descriptor.desired["data"]
            log.debug("Rotating token secret %s", name)
            self.store.update_object(updated)
        return expiry

    def _schedule_renewal(
        self,
        instance: ManagedInstance,
        user_name: str,
        lifetime: timedelta,
        expiry: datetime,
    ):
        key = token_timer_key(instance, user_name)
        delay = max(expiry - datetime.now(timezone.utc), timedelta(0))
        with self._expiries_lock:
            scheduled_expiry = self._expiries.get(key)
        if self.timers.get(key) is not None and scheduled_expiry == expiry:
            log.debug3("Renewal for %s already scheduled", key)
            return
        event = self.timers.schedule(
            key, delay, self.renew, instance, user_name, lifetime
        )
        with self._expiries_lock:
            if event is not None:
                self._expiries[key] = expiry
            else:
                self._expiries.pop(key, None)

    def _forget_expiry(self, key: TimerKey):
        with self._expiries_lock:
            self._expiries.pop(key, None)

    def _prune_expiries(self):
        """Drop the recorded expiry of every renewal no longer scheduled"""
        with self._expiries_lock:
            stale = [key for key in self._expiries if self.timers.get(key) is None]
            for key in stale:
                del self._expiries[key]
