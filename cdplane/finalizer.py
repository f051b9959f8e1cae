"""
The FinalizerCascade guards instance deletion. The finalizer is persisted before
any child is created, and on deletion the cascade tears down everything that
owner references cannot clean up before the finalizer is removed:

    NoFinalizer -> FinalizerPresent -> Deleting -> Removed

Steps of the cascade run in strict order and a failure in any of them retains
the finalizer so the whole cascade is re-run on the next pass. Every step treats
already-absent state as done, so re-running a partially completed cascade is
safe.
"""

# Standard
from enum import Enum
from typing import List, Optional, Tuple
import copy

# First Party
import alog

# Local
from . import constants
from .exceptions import ClusterError, PartialCascadeFailure, assert_read
from .instance import ManagedInstance
from .ownership import OwnershipRegistrar
from .source_namespaces import SourceNamespaceManager
from .store import ObjectStoreBase
from .timers import TimerRegistry

log = alog.use_channel("FINLZ")

# Cluster scoped kinds created for instances. These can never carry an owner
# reference, so the cascade deletes them by label.
CLUSTER_SCOPED_KINDS: List[Tuple[str, str]] = [
    ("ClusterRoleBinding", "rbac.authorization.k8s.io/v1"),
    ("ClusterRole", "rbac.authorization.k8s.io/v1"),
]

# Names of the cascade steps reported in PartialCascadeFailure
STEP_RELEASE_CLAIMS = "release-claims"
STEP_DELETE_CLUSTER_OBJECTS = "delete-cluster-objects"
STEP_CANCEL_TIMERS = "cancel-timers"


class FinalizerState(Enum):
    """The deletion state of an instance"""

    NO_FINALIZER = "NoFinalizer"
    FINALIZER_PRESENT = "FinalizerPresent"
    DELETING = "Deleting"
    REMOVED = "Removed"


class FinalizerCascade:
    """Adds the finalizer to new instances and runs the deletion cascade"""

    def __init__(
        self,
        store: ObjectStoreBase,
        source_namespaces: SourceNamespaceManager,
        timers: TimerRegistry,
        registrar: Optional[OwnershipRegistrar] = None,
    ):
        self.store = store
        self.source_namespaces = source_namespaces
        self.timers = timers
        self.registrar = registrar or OwnershipRegistrar()

    @staticmethod
    def state(instance: ManagedInstance) -> FinalizerState:
        """Determine the deletion state of an instance from its manifest"""
        if instance.has_finalizer:
            if instance.is_deleting:
                return FinalizerState.DELETING
            return FinalizerState.FINALIZER_PRESENT
        if instance.is_deleting:
            return FinalizerState.REMOVED
        return FinalizerState.NO_FINALIZER

    def ensure_finalizer(self, instance: ManagedInstance) -> Optional[dict]:
        """Add the finalizer to an instance and persist it

        Returns:
            updated:  Optional[dict]
                The updated manifest if the finalizer was added, None if it was
                already present

        Raises:
            WriteError, WriteConflictError if the finalizer cannot be persisted
        """
        if instance.has_finalizer:
            return None
        log.info("Adding finalizer to %s", instance)
        manifest = instance.to_dict()
        manifest["metadata"].setdefault("finalizers", []).append(
            constants.FINALIZER_NAME
        )
        manifest.pop("status", None)
        return self.store.update_object(manifest)

    @alog.logged_function(log.debug)
    @alog.timed_function(log.debug2)
    def run(self, instance: ManagedInstance) -> FinalizerState:
        """Run the deletion cascade for an instance marked for deletion

        Args:
            instance:  ManagedInstance
                The instance being deleted

        Returns:
            state:  FinalizerState
                REMOVED once the finalizer is gone

        Raises:
            PartialCascadeFailure if a teardown step fails
            WriteError, WriteConflictError if the finalizer cannot be removed
        """
        if self.state(instance) is not FinalizerState.DELETING:
            log.debug("%s has no finalizer to run", instance)
            return FinalizerState.REMOVED

        identity = instance.identity
        log.info("Running deletion cascade for %s", instance)

        # 1. Release every source namespace claim
        try:
            self.source_namespaces.release_all(identity)
        except ClusterError as err:
            raise PartialCascadeFailure(
                f"Failed to release source namespaces of {identity}: {err}",
                step=STEP_RELEASE_CLAIMS,
                errors=[err],
            ) from err

        # 2. Delete cluster scoped objects labeled with the identity
        errors = self._delete_cluster_objects(identity)
        if errors:
            raise PartialCascadeFailure(
                f"Failed to delete {len(errors)} cluster scoped objects of {identity}",
                step=STEP_DELETE_CLUSTER_OBJECTS,
                errors=errors,
            )

        # 3. Cancel every timer
        cancelled = self.timers.cancel_instance(identity, retire=True)
        if self.timers.keys_for(identity):
            raise PartialCascadeFailure(
                f"Timers of {identity} are still scheduled",
                step=STEP_CANCEL_TIMERS,
            )
        log.debug2("Cancelled %d timers of %s", cancelled, identity)

        # 4. Remove the finalizer
        self._remove_finalizer(instance)
        log.info("Deletion cascade complete for %s", instance)
        return FinalizerState.REMOVED

    ## Implementation Details ##################################################

    def _delete_cluster_objects(self, identity: str) -> List[ClusterError]:
        errors = []
        selector = f"{constants.INSTANCE_LABEL}={identity}"
        for kind, api_version in CLUSTER_SCOPED_KINDS:
            try:
                success, objs = self.store.filter_objects_current_state(
                    kind=kind, api_version=api_version, label_selector=selector
                )
                assert_read(success, f"Failed to list {kind} objects of {identity}")
            except ClusterError as err:
                errors.append(err)
                continue
            for obj in objs:
                name = obj["metadata"]["name"]
                log.debug("Deleting %s/%s of %s", kind, name, identity)
                try:
                    self.store.delete_object(
                        kind=kind, name=name, api_version=api_version
                    )
                except ClusterError as err:
                    log.warning("Failed to delete %s/%s: %s", kind, name, err)
                    errors.append(err)
        return errors

    def _remove_finalizer(self, instance: ManagedInstance):
        success, current = self.store.get_object_current_state(
            kind=instance.kind,
            name=instance.name,
            namespace=instance.namespace,
            api_version=instance.api_version,
        )
        assert_read(success, f"Failed to read current state of {instance}")
        if current is None:
            log.debug("%s is already gone", instance)
            return
        current = copy.deepcopy(current)
        finalizers = current["metadata"].get("finalizers") or []
        if constants.FINALIZER_NAME not in finalizers:
            return
        current["metadata"]["finalizers"] = [
            name for name in finalizers if name != constants.FINALIZER_NAME
        ]
        current.pop("status", None)
        log.debug("Removing finalizer from %s", instance)
        self.store.update_object(current)
