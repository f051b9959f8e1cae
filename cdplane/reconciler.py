"""
The ChildResourceReconciler decides, for one child object at a time, whether to
create, update, delete or leave it alone, and carries out that decision against
the object store.
"""

# Standard
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

# First Party
import alog

# Local
from .descriptor import ChildResourceDescriptor
from .diff import get_policy, retain_platform_metadata
from .exceptions import ClusterError, WriteConflictError, assert_read
from .instance import ManagedInstance
from .ownership import OwnershipRegistrar
from .store import ObjectStoreBase

log = alog.use_channel("RCNCL")


class Action(Enum):
    """The action taken for a descriptor"""

    CREATED = "Created"
    UPDATED = "Updated"
    DELETED = "Deleted"
    NOOP = "Noop"


@dataclass
class ReconcileOutcome:
    """The aggregated outcome of reconciling a list of descriptors"""

    actions: Dict[str, Action] = field(default_factory=dict)
    errors: Dict[str, ClusterError] = field(default_factory=dict)

    @property
    def conflicts(self) -> List[str]:
        return [
            key
            for key, err in self.errors.items()
            if isinstance(err, WriteConflictError)
        ]

    @property
    def failures(self) -> Dict[str, ClusterError]:
        """Errors other than write conflicts"""
        return {
            key: err
            for key, err in self.errors.items()
            if not isinstance(err, WriteConflictError)
        }

    @property
    def changed(self) -> bool:
        return any(action is not Action.NOOP for action in self.actions.values())

    def merge(self, other: "ReconcileOutcome"):
        self.actions.update(other.actions)
        self.errors.update(other.errors)

    def error_message(self) -> str:
        return "; ".join(f"{key}: {err}" for key, err in self.failures.items())


class ChildResourceReconciler:
    """Per-descriptor create/update/delete decision engine for one instance"""

    def __init__(
        self,
        instance: ManagedInstance,
        store: ObjectStoreBase,
        registrar: Optional[OwnershipRegistrar] = None,
    ):
        self.instance = instance
        self.store = store
        self.registrar = registrar or OwnershipRegistrar()

    def reconcile(self, descriptor: ChildResourceDescriptor) -> Action:
        """Converge one child object

        Args:
            descriptor:  ChildResourceDescriptor
                The desired state of the child

        Returns:
            action:  Action
                The action taken

        Raises:
            ReadError if the live object cannot be read
            WriteError if the create, update or delete fails
            WriteConflictError if the live object changed underneath the write
        """
        success, existing = self.store.get_object_current_state(
            kind=descriptor.kind,
            name=descriptor.name,
            namespace=descriptor.namespace,
            api_version=descriptor.api_version,
        )
        assert_read(success, f"Failed to read current state of {descriptor.describe()}")

        # Disabled features and unmet prerequisites
        if not descriptor.enabled:
            if existing is None:
                return Action.NOOP
            log.info(
                "Deleting %s: %s",
                descriptor.describe(),
                descriptor.disable_reason or "feature disabled",
            )
            self.store.delete_object(
                kind=descriptor.kind,
                name=descriptor.name,
                namespace=descriptor.namespace,
                api_version=descriptor.api_version,
            )
            return Action.DELETED

        # Absent objects
        if existing is None:
            self.registrar.register(self.instance, descriptor)
            log.info("Creating %s", descriptor.describe())
            self.store.create_object(descriptor.desired)
            return Action.CREATED

        if existing.get("metadata", {}).get("deletionTimestamp"):
            log.debug("%s is terminating, waiting to recreate", descriptor.describe())
            return Action.NOOP

        # Present objects
        self.registrar.register(self.instance, descriptor, existing)
        desired = retain_platform_metadata(existing, descriptor.desired)
        result = get_policy(descriptor.diff_policy).diff(existing, desired)
        if not result.changed:
            log.debug2("%s is up to date", descriptor.describe())
            return Action.NOOP

        log.info("Updating %s: %s", descriptor.describe(), result.explanation)
        self.store.update_object(result.patched)
        return Action.UPDATED

    def reconcile_all(
        self, descriptors: List[ChildResourceDescriptor]
    ) -> ReconcileOutcome:
        """Reconcile every descriptor in order. A failure on one descriptor is
        recorded and does not stop the others.
        """
        outcome = ReconcileOutcome()
        for descriptor in descriptors:
            key = descriptor.describe()
            try:
                outcome.actions[key] = self.reconcile(descriptor)
            except WriteConflictError as err:
                log.debug("Conflict reconciling %s: %s", key, err)
                outcome.errors[key] = err
            except ClusterError as err:
                log.warning("Failed to reconcile %s: %s", key, err)
                outcome.errors[key] = err
        log.debug(
            "Reconciled %d descriptors with %d errors",
            len(descriptors),
            len(outcome.errors),
        )
        return outcome
