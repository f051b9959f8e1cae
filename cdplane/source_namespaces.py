"""
The SourceNamespaceManager grants instances trust in namespaces outside their
target namespace. A namespace is claimed for an instance by labeling it with
the instance identity under the claim kind's label and provisioning a Role and
RoleBinding for the component service accounts. Each (namespace, claim kind)
pair has at most one claimant. An apps claim by one instance blocks every other
instance from the namespace, and app-set and notification claims require the
same instance to hold the apps claim.

Correctness comes from reading the namespace labels immediately before every
write, with optimistic concurrency on the namespace update. The in-memory index
is advisory.
"""

# Standard
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple
import copy
import fnmatch
import threading

# First Party
import alog

# Local
from . import constants
from .descriptor import ChildResourceDescriptor
from .exceptions import ClusterError, assert_read
from .instance import ClaimKind, Component, ManagedInstance
from .ownership import OwnershipRegistrar
from .reconciler import Action, ChildResourceReconciler, ReconcileOutcome
from .store import ObjectStoreBase

log = alog.use_channel("SRCNS")

# Kinds that depend on an apps claim by the same instance
DEPENDENT_CLAIM_KINDS = [ClaimKind.APPSETS, ClaimKind.NOTIFICATIONS]

# Claim kinds in the order they are claimed
CLAIM_ORDER = [ClaimKind.APPS] + DEPENDENT_CLAIM_KINDS

_FULL_VERBS = ["get", "list", "watch", "create", "update", "patch", "delete"]
_READ_VERBS = ["get", "list", "watch"]


@dataclass
class NamespaceClaim:
    """A claim on a namespace held by an instance"""

    namespace: str
    claim_kind: ClaimKind
    instance_identity: str
    role_name: Optional[str] = None
    role_binding_name: Optional[str] = None


def policy_rules(claim_kind: ClaimKind) -> List[dict]:
    """The fixed RBAC rules granted in a source namespace per claim kind"""
    group = constants.APPLICATION_API_GROUP
    if claim_kind is ClaimKind.APPS:
        return [
            {
                "apiGroups": [group],
                "resources": ["applications", "appprojects"],
                "verbs": _FULL_VERBS,
            },
            {"apiGroups": [""], "resources": ["events"], "verbs": ["create", "list"]},
        ]
    if claim_kind is ClaimKind.APPSETS:
        return [
            {
                "apiGroups": [group],
                "resources": ["applicationsets", "applications"],
                "verbs": _FULL_VERBS,
            },
            {"apiGroups": [""], "resources": ["events"], "verbs": ["create", "list"]},
        ]
    return [
        {
            "apiGroups": [group],
            "resources": ["applications", "appprojects"],
            "verbs": _READ_VERBS,
        },
        {
            "apiGroups": [""],
            "resources": ["configmaps", "secrets"],
            "verbs": _READ_VERBS,
        },
    ]


_CLAIM_SUBJECTS = {
    ClaimKind.APPS: [Component.SERVER, Component.APPLICATION_CONTROLLER],
    ClaimKind.APPSETS: [Component.APPLICATIONSET],
    ClaimKind.NOTIFICATIONS: [Component.NOTIFICATIONS],
}

_RBAC_KINDS = [
    ("RoleBinding", "rbac.authorization.k8s.io/v1"),
    ("Role", "rbac.authorization.k8s.io/v1"),
]


class SourceNamespaceManager:
    """Claims and releases source namespaces for instances"""

    def __init__(
        self,
        store: ObjectStoreBase,
        registrar: Optional[OwnershipRegistrar] = None,
    ):
        self.store = store
        self.registrar = registrar or OwnershipRegistrar()
        self._index: Dict[Tuple[str, ClaimKind], str] = {}
        self._index_lock = threading.Lock()

    ## Index ###################################################################

    def rebuild_index(self):
        """Rebuild the in-memory index from the namespace labels

        Raises:
            ReadError if the namespaces cannot be listed
        """
        index = {}
        for claim_kind in CLAIM_ORDER:
            for namespace in self._list_namespaces(claim_kind.label):
                metadata = namespace.get("metadata", {})
                index[(metadata["name"], claim_kind)] = metadata["labels"][
                    claim_kind.label
                ]
        with self._index_lock:
            self._index = index
        log.info("Rebuilt source namespace index with %d claims", len(index))

    def claimant(self, namespace: str, claim_kind: ClaimKind) -> Optional[str]:
        """Get the indexed claimant of a namespace"""
        with self._index_lock:
            return self._index.get((namespace, claim_kind))

    def claims_for(self, instance_identity: str) -> List[NamespaceClaim]:
        """Get the indexed claims held by an instance"""
        with self._index_lock:
            return [
                NamespaceClaim(namespace, claim_kind, identity)
                for (namespace, claim_kind), identity in sorted(
                    self._index.items(),
                    key=lambda item: (item[0][0], item[0][1].value),
                )
                if identity == instance_identity
            ]

    def _set_index(
        self, namespace: str, claim_kind: ClaimKind, identity: Optional[str]
    ):
        with self._index_lock:
            if identity is None:
                self._index.pop((namespace, claim_kind), None)
            else:
                self._index[(namespace, claim_kind)] = identity

    ## Reconcile ###############################################################

    @alog.logged_function(log.debug2)
    def reconcile(self, instance: ManagedInstance) -> ReconcileOutcome:
        """Converge the claims of an instance to its source namespace lists.
        Stale claims are released first, then apps claims are made, then the
        dependent claims.

        Args:
            instance:  ManagedInstance
                The instance being reconciled

        Returns:
            outcome:  ReconcileOutcome
                Actions and errors keyed by "<claim kind>/<namespace>"
        """
        outcome = ReconcileOutcome()
        try:
            desired = self.desired_namespaces(instance)
        except ClusterError as err:
            log.warning("Failed to resolve source namespaces for %s: %s", instance, err)
            outcome.errors["source-namespaces"] = err
            return outcome

        # Release claims that are no longer desired. Dependent kinds go first
        # so an apps release never leaves a dependent claim behind.
        for claim_kind in reversed(CLAIM_ORDER):
            try:
                held = self._claimed_namespaces(instance.identity, claim_kind)
            except ClusterError as err:
                outcome.errors[f"{claim_kind.value}/*"] = err
                continue
            for namespace in sorted(held - desired[claim_kind]):
                key = f"{claim_kind.value}/{namespace}"
                log.info(
                    "Releasing %s claim on %s for %s",
                    claim_kind.value,
                    namespace,
                    instance,
                )
                try:
                    self.release(instance.identity, namespace, claim_kind)
                    outcome.actions[key] = Action.DELETED
                except ClusterError as err:
                    outcome.errors[key] = err

        for claim_kind in CLAIM_ORDER:
            for namespace in sorted(desired[claim_kind]):
                key = f"{claim_kind.value}/{namespace}"
                try:
                    outcome.actions[key] = self.claim(instance, namespace, claim_kind)
                except ClusterError as err:
                    log.warning("Failed to claim %s: %s", key, err)
                    outcome.errors[key] = err
        return outcome

    def desired_namespaces(
        self, instance: ManagedInstance
    ) -> Dict[ClaimKind, Set[str]]:
        """Expand the source namespace entries of each claim kind. Glob entries
        are matched against the live namespaces. The instance's own target
        namespace is never a source namespace.

        Raises:
            ReadError if patterns are present and namespaces cannot be listed
        """
        live_names = None
        desired = {}
        for claim_kind in CLAIM_ORDER:
            names = set()
            for entry in instance.source_namespaces(claim_kind):
                if any(char in entry for char in "*?["):
                    if live_names is None:
                        live_names = [
                            ns["metadata"]["name"] for ns in self._list_namespaces()
                        ]
                    names.update(fnmatch.filter(live_names, entry))
                else:
                    names.add(entry)
            names.discard(instance.target_namespace)
            desired[claim_kind] = names
        return desired

    ## Claim / Release #########################################################

    def claim(
        self,
        instance: ManagedInstance,
        namespace: str,
        claim_kind: ClaimKind,
    ) -> Action:
        """Claim one namespace under one claim kind

        Returns:
            action:  Action
                CREATED if the claim label was added, UPDATED if only RBAC
                changed, NOOP if already converged or skipped

        Raises:
            ReadError, WriteError, WriteConflictError
        """
        identity = instance.identity
        ns_obj = self._get_namespace(namespace)
        if ns_obj is None:
            log.info("Source namespace %s does not exist, skipping", namespace)
            self._release_absent(identity, namespace)
            return Action.NOOP
        if ns_obj["metadata"].get("deletionTimestamp"):
            log.info("Source namespace %s is terminating, skipping", namespace)
            return Action.NOOP

        labels = ns_obj["metadata"].get("labels") or {}
        apps_holder = labels.get(ClaimKind.APPS.label)
        if apps_holder is not None and apps_holder != identity:
            log.info(
                "Namespace %s is already managed by %s, skipping %s claim for %s",
                namespace,
                apps_holder,
                claim_kind.value,
                identity,
            )
            for stale_kind in DEPENDENT_CLAIM_KINDS:
                if labels.get(stale_kind.label) == identity:
                    self.release(identity, namespace, stale_kind)
            return Action.NOOP

        if claim_kind is not ClaimKind.APPS and apps_holder != identity:
            log.info(
                "Namespace %s is not an apps source namespace of %s, skipping %s claim",
                namespace,
                identity,
                claim_kind.value,
            )
            return Action.NOOP

        holder = labels.get(claim_kind.label)
        if holder is not None and holder != identity:
            log.info(
                "Namespace %s is already claimed for %s by %s, skipping",
                namespace,
                claim_kind.value,
                holder,
            )
            return Action.NOOP

        action = Action.NOOP
        if holder is None:
            log.info(
                "Claiming %s for %s under %s", namespace, identity, claim_kind.value
            )
            ns_obj["metadata"].setdefault("labels", {})[claim_kind.label] = identity
            self.store.update_object(ns_obj)
            action = Action.CREATED
        self._set_index(namespace, claim_kind, identity)

        reconciler = ChildResourceReconciler(instance, self.store, self.registrar)
        for descriptor in self.rbac_descriptors(instance, namespace, claim_kind):
            rbac_action = reconciler.reconcile(descriptor)
            if action is Action.NOOP and rbac_action is not Action.NOOP:
                action = Action.UPDATED
        return action

    def release(
        self,
        instance_identity: str,
        namespace: str,
        claim_kind: ClaimKind,
    ):
        """Release a claim. Absent RBAC objects, labels and namespaces are
        treated as already released. Releasing the apps claim also releases the
        dependent claims on the namespace.

        Raises:
            ReadError, WriteError, WriteConflictError
        """
        if claim_kind is ClaimKind.APPS:
            for dependent in DEPENDENT_CLAIM_KINDS:
                self.release(instance_identity, namespace, dependent)

        ns_obj = self._get_namespace(namespace)
        if ns_obj is None:
            self._set_index(namespace, claim_kind, None)
            return

        self._delete_rbac(instance_identity, namespace, claim_kind)

        labels = ns_obj["metadata"].get("labels") or {}
        if labels.get(claim_kind.label) == instance_identity:
            log.debug("Removing %s label from %s", claim_kind.label, namespace)
            del ns_obj["metadata"]["labels"][claim_kind.label]
            self.store.update_object(ns_obj)
        self._set_index(namespace, claim_kind, None)

    def release_all(self, instance_identity: str):
        """Release every claim held by an instance, found both through the live
        labels and through the index

        Raises:
            ClusterError if any release fails after attempting all of them
        """
        claimed = set()
        for claim_kind in CLAIM_ORDER:
            for namespace in self._claimed_namespaces(instance_identity, claim_kind):
                claimed.add((namespace, claim_kind))
        for claim in self.claims_for(instance_identity):
            claimed.add((claim.namespace, claim.claim_kind))

        errors = []
        order = {kind: i for i, kind in enumerate(reversed(CLAIM_ORDER))}
        for namespace, claim_kind in sorted(
            claimed, key=lambda item: (item[0], order[item[1]])
        ):
            try:
                self.release(instance_identity, namespace, claim_kind)
            except ClusterError as err:
                log.warning(
                    "Failed to release %s claim on %s: %s",
                    claim_kind.value,
                    namespace,
                    err,
                )
                errors.append(err)
        if errors:
            raise ClusterError(
                f"Failed to release {len(errors)} source namespace claims: "
                + "; ".join(str(err) for err in errors)
            )

    ## RBAC ####################################################################

    def rbac_descriptors(
        self,
        instance: ManagedInstance,
        namespace: str,
        claim_kind: ClaimKind,
    ) -> List[ChildResourceDescriptor]:
        """The Role and RoleBinding granted in a source namespace"""
        name = self.registrar.resource_name(
            instance, f"{claim_kind.value}-source", cluster_scoped=True
        )
        labels = {constants.CLAIM_KIND_LABEL: claim_kind.value}
        subjects = [
            {
                "kind": "ServiceAccount",
                "name": self.registrar.resource_name(instance, component.value),
                "namespace": instance.target_namespace,
            }
            for component in _CLAIM_SUBJECTS[claim_kind]
        ]
        return [
            ChildResourceDescriptor(
                kind="Role",
                api_version="rbac.authorization.k8s.io/v1",
                name=name,
                namespace=namespace,
                desired={
                    "metadata": {"labels": dict(labels)},
                    "rules": policy_rules(claim_kind),
                },
                owned=False,
            ),
            ChildResourceDescriptor(
                kind="RoleBinding",
                api_version="rbac.authorization.k8s.io/v1",
                name=name,
                namespace=namespace,
                desired={
                    "metadata": {"labels": dict(labels)},
                    "roleRef": {
                        "apiGroup": "rbac.authorization.k8s.io",
                        "kind": "Role",
                        "name": name,
                    },
                    "subjects": subjects,
                },
                owned=False,
            ),
        ]

    def _delete_rbac(
        self, instance_identity: str, namespace: str, claim_kind: ClaimKind
    ):
        selector = (
            f"{constants.INSTANCE_LABEL}={instance_identity},"
            f"{constants.CLAIM_KIND_LABEL}={claim_kind.value}"
        )
        for kind, api_version in _RBAC_KINDS:
            success, objs = self.store.filter_objects_current_state(
                kind=kind,
                namespace=namespace,
                api_version=api_version,
                label_selector=selector,
            )
            assert_read(success, f"Failed to list {kind} objects in {namespace}")
            for obj in objs:
                name = obj["metadata"]["name"]
                log.debug2("Deleting %s/%s in %s", kind, name, namespace)
                self.store.delete_object(
                    kind=kind,
                    name=name,
                    namespace=namespace,
                    api_version=api_version,
                )

    ## Implementation Details ##################################################

    def _get_namespace(self, namespace: str) -> Optional[dict]:
        success, ns_obj = self.store.get_object_current_state(
            kind="Namespace", name=namespace, api_version="v1"
        )
        assert_read(success, f"Failed to read namespace {namespace}")
        return copy.deepcopy(ns_obj) if ns_obj is not None else None

    def _list_namespaces(self, label_selector: Optional[str] = None) -> List[dict]:
        success, namespaces = self.store.filter_objects_current_state(
            kind="Namespace", api_version="v1", label_selector=label_selector
        )
        assert_read(success, "Failed to list namespaces")
        return namespaces

    def _claimed_namespaces(
        self, instance_identity: str, claim_kind: ClaimKind
    ) -> Set[str]:
        return {
            ns["metadata"]["name"]
            for ns in self._list_namespaces(f"{claim_kind.label}={instance_identity}")
        }

    def _release_absent(self, instance_identity: str, namespace: str):
        """Drop index entries for a namespace that no longer exists"""
        for claim_kind in CLAIM_ORDER:
            if self.claimant(namespace, claim_kind) == instance_identity:
                log.debug("Dropping stale %s claim on %s", claim_kind.value, namespace)
                self._set_index(namespace, claim_kind, None)
