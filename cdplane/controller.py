"""
The InstanceController is the entrypoint for one reconciliation pass of one
instance. The general reconcile path is:

    1. Fetch the instance by key
    2. Check the instance label selector
    3. If it is marked for deletion, run the FinalizerCascade, otherwise
       validate the instance spec
    4. Ensure the finalizer is persisted
    5. Build the desired state and reconcile every child
    6. Reconcile source namespace claims and local user tokens
    7. Write status if it changed
"""

# Standard
from dataclasses import dataclass
from typing import Optional, Tuple
import base64
import uuid

# First Party
import alog

# Local
from . import config, constants
from .desired import DesiredStateBuilder
from .exceptions import (
    CdplaneFatalError,
    ClusterError,
    PartialCascadeFailure,
    ValidationError,
    WriteConflictError,
    assert_read,
)
from .finalizer import FinalizerCascade, FinalizerState
from .instance import ManagedInstance, instance_from_manifest
from .log_format import reconcile_context
from .ownership import OwnershipRegistrar
from .reconciler import ChildResourceReconciler, ReconcileOutcome
from .registry import InstanceRegistry
from .source_namespaces import SourceNamespaceManager
from .status import Phase, update_instance_status
from .store import ObjectStoreBase
from .timers import TimerRegistry
from .tokens import LocalUserTokenManager
from .utils import match_label_selector

log = alog.use_channel("CTRLR")

# Status message for a fully converged instance
AVAILABLE_MESSAGE = "All components reconciled"

# Api version of the Route kind used to detect OpenShift
ROUTE_API_VERSION = "route.openshift.io/v1"


@dataclass
class ReconciliationResult:
    """The result of one reconciliation pass"""

    # Seconds after which the key should be reconciled again, None for never
    requeue_after: Optional[float] = None
    # The error that ended or degraded the pass
    error: Optional[Exception] = None

    @property
    def requeue(self) -> bool:
        return self.requeue_after is not None


class InstanceController:
    """Wires the engine components together for reconciling instances"""

    def __init__(  # pylint: disable=too-many-arguments
        self,
        store: ObjectStoreBase,
        registry: Optional[InstanceRegistry] = None,
        timers: Optional[TimerRegistry] = None,
        registrar: Optional[OwnershipRegistrar] = None,
        builder: Optional[DesiredStateBuilder] = None,
        source_namespaces: Optional[SourceNamespaceManager] = None,
        tokens: Optional[LocalUserTokenManager] = None,
        finalizer: Optional[FinalizerCascade] = None,
    ):
        """Construct with injectable collaborators. Anything not given is built
        on top of the store.
        """
        self.store = store
        self.registry = registry or InstanceRegistry()
        self.timers = timers or TimerRegistry()
        self.registrar = registrar or OwnershipRegistrar()
        self.builder = builder or DesiredStateBuilder(
            store=store,
            registrar=self.registrar,
            route_available=store.has_kind("Route", ROUTE_API_VERSION),
        )
        self.source_namespaces = source_namespaces or SourceNamespaceManager(
            store, self.registrar
        )
        self.tokens = tokens or LocalUserTokenManager(
            store, self.timers, self.registrar
        )
        self.finalizer = finalizer or FinalizerCascade(
            store, self.source_namespaces, self.timers, self.registrar
        )

    def start(self):
        """Rebuild the in-memory claim index and start the timer thread"""
        self.source_namespaces.rebuild_index()
        self.timers.start()

    def stop(self):
        self.timers.stop()

    ## Public Interface ########################################################

    def reconcile(self, instance_key: str) -> ReconciliationResult:
        """Run one reconciliation pass for an instance. Expected errors are
        captured in the result rather than raised.

        Args:
            instance_key:  str
                "<namespace>/<name>" for namespaced instances or "<name>" for
                cluster scoped instances

        Returns:
            result:  ReconciliationResult
                When to requeue and the error that degraded the pass
        """
        reconcile_id = self.generate_id()
        with reconcile_context(instance_key, reconcile_id):
            log.debug("Starting reconcile %s for %s", reconcile_id, instance_key)
            try:
                instance = self._fetch_instance(instance_key)
            except ClusterError as err:
                log.warning("Failed to fetch %s: %s", instance_key, err)
                return ReconciliationResult(config.requeue_after_seconds, err)
            if instance is None:
                return ReconciliationResult()

            try:
                self._check_label_selector(instance)
                self.registry.record_reconciliation(instance.identity)
                if instance.is_deleting:
                    return self._finalize(instance)
                return self._reconcile_instance(instance)

            except CdplaneFatalError as err:
                log.warning("Reconcile of %s failed: %s", instance, err)
                self._write_status(instance, Phase.FAILED, str(err))
                return ReconciliationResult(error=err)

            except WriteConflictError as err:
                log.debug("Conflict reconciling %s: %s", instance, err)
                return ReconciliationResult(config.conflict_requeue_seconds, err)

            except PartialCascadeFailure as err:
                log.warning(
                    "Deletion cascade of %s failed at %s: %s", instance, err.step, err
                )
                self._write_status(instance, Phase.UNKNOWN, str(err))
                return ReconciliationResult(config.requeue_after_seconds, err)

            except ClusterError as err:
                log.warning("Cluster error reconciling %s: %s", instance, err)
                self._write_status(instance, Phase.FAILED, str(err))
                return ReconciliationResult(config.requeue_after_seconds, err)

    @classmethod
    def generate_id(cls) -> str:
        """Generates a unique human readable id for a reconciliation

        Returns:
            id:  str
                A unique base32 encoded id
        """
        base32_str = base64.b32encode(uuid.uuid4().bytes).decode("utf-8")
        return base32_str[:22]

    @staticmethod
    def parse_key(instance_key: str) -> Tuple[str, Optional[str], str]:
        """Split an instance key into (kind, namespace, name)"""
        if "/" in instance_key:
            namespace, name = instance_key.split("/", 1)
            return constants.NAMESPACED_KIND, namespace, name
        return constants.CLUSTER_KIND, None, instance_key

    ## Implementation Details ##################################################

    def _fetch_instance(self, instance_key: str) -> Optional[ManagedInstance]:
        kind, namespace, name = self.parse_key(instance_key)
        success, manifest = self.store.get_object_current_state(
            kind=kind,
            name=name,
            namespace=namespace,
            api_version=constants.API_VERSION,
        )
        assert_read(success, f"Failed to read instance {instance_key}")
        if manifest is not None:
            return instance_from_manifest(manifest)

        # The instance is gone. Drop anything still tracked for it.
        stub = instance_from_manifest(
            {
                "kind": kind,
                "apiVersion": constants.API_VERSION,
                "metadata": {"name": name, "namespace": namespace},
            }
        )
        log.debug("Instance %s no longer exists", instance_key)
        self.timers.cancel_instance(stub.identity, retire=True)
        self.registry.remove(stub.identity)
        return None

    def _finalize(self, instance: ManagedInstance) -> ReconciliationResult:
        if FinalizerCascade.state(instance) is FinalizerState.DELETING:
            self.registry.set_phase(instance.identity, Phase.UNKNOWN)
            self._write_status(instance, Phase.UNKNOWN, "Deleting")
        self.finalizer.run(instance)
        self.registry.remove(instance.identity)
        return ReconciliationResult()

    @alog.timed_function(log.debug)
    def _reconcile_instance(self, instance: ManagedInstance) -> ReconciliationResult:
        instance.validate()

        updated = self.finalizer.ensure_finalizer(instance)
        if updated is not None:
            instance = instance_from_manifest(updated)
        self.timers.reinstate(instance.identity)

        desired = self.builder.build(instance)
        outcome = ChildResourceReconciler(
            instance, self.store, self.registrar
        ).reconcile_all(desired.descriptors)
        outcome.merge(self.source_namespaces.reconcile(instance))
        outcome.merge(self.tokens.reconcile(instance))
        return self._report(instance, outcome, desired.checksums)

    def _report(
        self,
        instance: ManagedInstance,
        outcome: ReconcileOutcome,
        checksums: dict,
    ) -> ReconciliationResult:
        """Turn the aggregated outcome into a status write and a result"""
        failures = outcome.failures
        if failures:
            message = outcome.error_message()
            log.warning("%d failures reconciling %s", len(failures), instance)
            self._write_status(instance, Phase.FAILED, message, checksums)
            return ReconciliationResult(
                config.requeue_after_seconds, ClusterError(message)
            )

        if outcome.conflicts:
            # Conflicts are retried without being surfaced in status
            log.debug("Conflicts on %s, requeueing", outcome.conflicts)
            phase = next(
                (phase for phase in Phase if phase.value == instance.phase),
                Phase.PENDING,
            )
            self.registry.set_phase(instance.identity, phase)
            return ReconciliationResult(config.conflict_requeue_seconds)

        self._write_status(instance, Phase.AVAILABLE, AVAILABLE_MESSAGE, checksums)
        return ReconciliationResult()

    def _write_status(
        self,
        instance: ManagedInstance,
        phase: Phase,
        message: str,
        checksums: Optional[dict] = None,
    ):
        self.registry.set_phase(instance.identity, phase)
        try:
            update_instance_status(self.store, instance, phase, message, checksums)
        except ClusterError as err:
            log.warning("Failed to update status of %s: %s", instance, err)

    @staticmethod
    def _check_label_selector(instance: ManagedInstance):
        selector = config.instance_label_selector
        if not selector:
            return
        try:
            matched = match_label_selector(instance.labels, selector)
        except ValueError as err:
            raise ValidationError(
                f"Malformed instance label selector [{selector}]: {err}"
            ) from err
        if not matched:
            raise ValidationError(
                f"Instance labels do not match the instance label selector [{selector}]"
            )
