"""
The ManagedInstance abstraction over the two instance variants. Every other
component works only through the accessors defined on ManagedInstance and never
looks at which variant it holds.
"""

# Standard
from enum import Enum
from typing import Any, Dict, List, Optional
import abc
import copy
import re

# First Party
import alog

# Local
from . import config, constants
from .exceptions import assert_valid
from .utils import get_truncated_name, nested_get, parse_time_delta

log = alog.use_channel("INSTC")

## Components ##################################################################


class Component(Enum):
    """The sub-components of the managed platform"""

    SERVER = "server"
    REPO_SERVER = "repo-server"
    APPLICATION_CONTROLLER = "application-controller"
    REDIS = "redis"
    REDIS_HA = "redis-ha"
    APPLICATIONSET = "applicationset-controller"
    NOTIFICATIONS = "notifications-controller"


# Spec section and default enablement per component. Redis HA has no section of
# its own; it is driven by spec.ha and spec.redis.
_COMPONENT_SPEC = {
    Component.SERVER: ("server", True),
    Component.REPO_SERVER: ("repo", True),
    Component.APPLICATION_CONTROLLER: ("controller", True),
    Component.REDIS: ("redis", True),
    Component.APPLICATIONSET: ("applicationSet", False),
    Component.NOTIFICATIONS: ("notifications", False),
}


class ClaimKind(Enum):
    """The kinds of source namespace claims"""

    APPS = "apps"
    APPSETS = "app-sets"
    NOTIFICATIONS = "notifications"

    @property
    def label(self) -> str:
        return {
            ClaimKind.APPS: constants.APPS_CLAIM_LABEL,
            ClaimKind.APPSETS: constants.APPSETS_CLAIM_LABEL,
            ClaimKind.NOTIFICATIONS: constants.NOTIFICATIONS_CLAIM_LABEL,
        }[self]


_SOURCE_NAMESPACE_FIELDS = {
    ClaimKind.APPS: "spec.sourceNamespaces",
    ClaimKind.APPSETS: "spec.applicationSet.sourceNamespaces",
    ClaimKind.NOTIFICATIONS: "spec.notifications.sourceNamespaces",
}

_dns_label_regex = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_source_pattern_regex = re.compile(r"^[a-z0-9*?\[\]!-]+$")

## Interface ###################################################################


class ManagedInstance(abc.ABC):
    """Read-only view of a managed instance manifest"""

    def __init__(self, manifest: dict):
        self._manifest = copy.deepcopy(dict(manifest))
        self._manifest.setdefault("metadata", {})
        self._manifest.setdefault("spec", {})

    ## Abstract Interface ######################################################

    @property
    @abc.abstractmethod
    def is_cluster_scoped(self) -> bool:
        """Whether the instance object itself is cluster scoped"""

    @property
    @abc.abstractmethod
    def target_namespace(self) -> str:
        """The namespace holding the instance's namespaced children"""

    @property
    @abc.abstractmethod
    def identity(self) -> str:
        """The label-safe identity of the instance"""

    ## Identity ################################################################

    @property
    def kind(self) -> str:
        return self._manifest.get("kind")

    @property
    def api_version(self) -> str:
        return self._manifest.get("apiVersion")

    @property
    def metadata(self) -> dict:
        return self._manifest["metadata"]

    @property
    def spec(self) -> dict:
        return self._manifest["spec"]

    @property
    def status(self) -> dict:
        return self._manifest.get("status") or {}

    @property
    def name(self) -> str:
        return self.metadata.get("name")

    @property
    def namespace(self) -> Optional[str]:
        """The home namespace of the instance, None when cluster scoped"""
        return self.metadata.get("namespace")

    @property
    def uid(self) -> Optional[str]:
        return self.metadata.get("uid")

    @property
    def labels(self) -> Dict[str, str]:
        return self.metadata.get("labels") or {}

    @property
    def key(self) -> str:
        """The key used to queue the instance for reconciliation"""
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def to_dict(self) -> dict:
        return copy.deepcopy(self._manifest)

    ## Lifecycle ###############################################################

    @property
    def finalizers(self) -> List[str]:
        return list(self.metadata.get("finalizers") or [])

    @property
    def has_finalizer(self) -> bool:
        return constants.FINALIZER_NAME in self.finalizers

    @property
    def is_deleting(self) -> bool:
        return self.metadata.get("deletionTimestamp") is not None

    @property
    def phase(self) -> Optional[str]:
        return self.status.get("phase")

    ## Feature Toggles #########################################################

    def component_spec(self, component: Component) -> dict:
        """Get the spec section for a component (empty if not set)"""
        if component is Component.REDIS_HA:
            return self.spec.get("ha") or {}
        section, _ = _COMPONENT_SPEC[component]
        return self.spec.get(section) or {}

    def component_enabled(self, component: Component) -> bool:
        """Whether a component is enabled. Redis HA requires both HA mode and
        the cache component.
        """
        if component is Component.REDIS_HA:
            return self.ha_enabled and self.component_enabled(Component.REDIS)
        return self._section_enabled(component)

    def _section_enabled(self, component: Component) -> bool:
        section, default = _COMPONENT_SPEC[component]
        value = self.spec.get(section)
        if value is None:
            return default
        return bool(value.get("enabled", True))

    @property
    def ha_enabled(self) -> bool:
        return bool(nested_get(self.spec, "ha.enabled", False))

    @property
    def tls_enabled(self) -> bool:
        return bool(nested_get(self.spec, "tls.enabled", False))

    @property
    def route_enabled(self) -> bool:
        return self.component_enabled(Component.SERVER) and bool(
            nested_get(self.spec, "server.route.enabled", False)
        )

    @property
    def ingress_enabled(self) -> bool:
        return self.component_enabled(Component.SERVER) and bool(
            nested_get(self.spec, "server.ingress.enabled", False)
        )

    ## Source Namespaces #######################################################

    def source_namespaces(self, claim_kind: ClaimKind) -> List[str]:
        """The source namespace entries (names or glob patterns) for a claim
        kind. App-set and notification entries are ignored when the owning
        component is disabled.
        """
        if claim_kind is ClaimKind.APPSETS and not self.component_enabled(
            Component.APPLICATIONSET
        ):
            return []
        if claim_kind is ClaimKind.NOTIFICATIONS and not self.component_enabled(
            Component.NOTIFICATIONS
        ):
            return []
        field = _SOURCE_NAMESPACE_FIELDS[claim_kind]
        return list(nested_get(self._manifest, field) or [])

    ## Local Users #############################################################

    def local_users(self) -> List[Dict[str, Any]]:
        """The enabled local users with their token lifetimes resolved"""
        users = []
        for user in self.spec.get("localUsers") or []:
            if not user.get("enabled", True):
                continue
            lifetime = user.get("tokenLifetime") or config.default_token_lifetime
            users.append(
                {"name": user["name"], "tokenLifetime": parse_time_delta(lifetime)}
            )
        return users

    ## Validation ##############################################################

    def validate(self):
        """Validate the parts of the spec the engine depends on

        Raises:
            ValidationError if the spec is malformed
        """
        assert_valid(bool(self.name), "Instance has no name")
        assert_valid(
            bool(_dns_label_regex.match(self.target_namespace or "")),
            f"Invalid target namespace [{self.target_namespace}]",
        )
        for claim_kind, field in _SOURCE_NAMESPACE_FIELDS.items():
            entries = nested_get(self._manifest, field)
            if entries is None:
                continue
            assert_valid(
                isinstance(entries, list),
                f"{field} must be a list for {claim_kind.value} claims",
            )
            for entry in entries:
                assert_valid(
                    isinstance(entry, str) and bool(_source_pattern_regex.match(entry)),
                    f"Invalid source namespace entry [{entry}] in {field}",
                )

        replicas = nested_get(self.spec, "notifications.replicas")
        assert_valid(
            replicas is None or (isinstance(replicas, int) and replicas >= 0),
            f"Invalid notifications replicas [{replicas}]",
        )

        seen_users = set()
        for user in self.spec.get("localUsers") or []:
            assert_valid(
                isinstance(user, dict) and bool(user.get("name")),
                "Every local user must have a name",
            )
            assert_valid(
                bool(_dns_label_regex.match(user["name"])),
                f"Invalid local user name [{user['name']}]",
            )
            assert_valid(
                user["name"] not in seen_users,
                f"Duplicate local user [{user['name']}]",
            )
            seen_users.add(user["name"])
            lifetime = user.get("tokenLifetime")
            assert_valid(
                lifetime is None or parse_time_delta(lifetime) is not None,
                f"Invalid token lifetime [{lifetime}] for local user [{user['name']}]",
            )

    ## Ownership ###############################################################

    def owner_reference(self) -> dict:
        """Make the controller owner reference pointing at this instance"""
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": True,
            # The instance will not be deleted until this object completes its
            # deletion
            "blockOwnerDeletion": True,
        }

    def can_own(self, namespace: Optional[str]) -> bool:
        """Whether this instance may be the owner of an object in the given
        namespace. Cluster scoped objects are never owned.
        """
        if namespace is None:
            return False
        return self.is_cluster_scoped or namespace == self.namespace

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.key})"


## Variants ####################################################################


class NamespacedPlatform(ManagedInstance):
    """An instance living in, and deploying into, its own namespace"""

    @property
    def is_cluster_scoped(self) -> bool:
        return False

    @property
    def target_namespace(self) -> str:
        return self.namespace

    @property
    def identity(self) -> str:
        return get_truncated_name(
            f"{self.namespace}.{self.name}", constants.MAX_LABEL_VALUE_LEN
        )


class ClusterPlatform(ManagedInstance):
    """A cluster scoped instance deploying into a configured target namespace"""

    @property
    def is_cluster_scoped(self) -> bool:
        return True

    @property
    def target_namespace(self) -> str:
        return self.spec.get("targetNamespace") or config.default_target_namespace

    @property
    def identity(self) -> str:
        return get_truncated_name(self.name, constants.MAX_LABEL_VALUE_LEN)


def instance_from_manifest(manifest: dict) -> ManagedInstance:
    """Wrap a manifest in the variant matching its kind"""
    kind = manifest.get("kind")
    if kind == constants.CLUSTER_KIND:
        return ClusterPlatform(manifest)
    if kind == constants.NAMESPACED_KIND:
        return NamespacedPlatform(manifest)
    # Fall back on scope for custom kinds
    if manifest.get("metadata", {}).get("namespace"):
        return NamespacedPlatform(manifest)
    return ClusterPlatform(manifest)
