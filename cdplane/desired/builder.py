"""
The DesiredStateBuilder turns an instance into the ordered list of child
descriptors for one reconciliation pass
"""

# Standard
from dataclasses import dataclass, field
from typing import Dict, List, Optional
import hashlib

# First Party
import alog

# Local
from .. import constants
from ..descriptor import ChildResourceDescriptor
from ..instance import ManagedInstance
from ..ownership import OwnershipRegistrar
from ..store import ObjectStoreBase
from ..utils import sha256_checksum
from .cache import cache_descriptors
from .components import (
    application_controller_descriptors,
    applicationset_descriptors,
    notifications_descriptors,
    repo_server_descriptors,
    server_descriptors,
)
from .rbac import cluster_roles, service_accounts

log = alog.use_channel("DSRD")

# Keys of the TLS secret checksums kept in status
REPO_SERVER_TLS = "repo-server-tls"
CACHE_TLS = "redis-tls"


@dataclass
class DesiredState:
    """The output of the builder for one pass"""

    descriptors: List[ChildResourceDescriptor] = field(default_factory=list)
    checksums: Dict[str, str] = field(default_factory=dict)


class DesiredStateBuilder:
    """Builds hand-constructed desired objects for every component"""

    def __init__(
        self,
        store: Optional[ObjectStoreBase] = None,
        registrar: Optional[OwnershipRegistrar] = None,
        route_available: bool = False,
    ):
        """
        Args:
            store:  Optional[ObjectStoreBase]
                Store used to read TLS secrets for checksums. Without a store,
                checksums are carried over from status.
            registrar:  Optional[OwnershipRegistrar]
                The registrar used for naming
            route_available:  bool
                Whether the cluster serves the Route API
        """
        self.store = store
        self.registrar = registrar or OwnershipRegistrar()
        self.route_available = route_available

    @alog.logged_function(log.debug2)
    def build(self, instance: ManagedInstance) -> DesiredState:
        """Build the ordered descriptors for an instance

        Args:
            instance:  ManagedInstance
                The validated instance

        Returns:
            desired_state:  DesiredState
                Descriptors ordered so that dependencies come first, plus the
                TLS checksums to record in status
        """
        registrar = self.registrar
        checksums = self._tls_checksums(instance)
        repo_checksum = _checksum_annotation(
            checksums, [REPO_SERVER_TLS, CACHE_TLS]
        )
        cache_checksum = _checksum_annotation(checksums, [CACHE_TLS])

        descriptors = []
        descriptors.extend(service_accounts(registrar, instance))
        descriptors.extend(cluster_roles(registrar, instance))
        descriptors.extend(cache_descriptors(registrar, instance, cache_checksum))
        descriptors.extend(repo_server_descriptors(registrar, instance, repo_checksum))
        descriptors.extend(
            application_controller_descriptors(registrar, instance, repo_checksum)
        )
        descriptors.extend(
            server_descriptors(
                registrar,
                instance,
                repo_checksum,
                route_available=self.route_available,
            )
        )
        descriptors.extend(applicationset_descriptors(registrar, instance))
        descriptors.extend(notifications_descriptors(registrar, instance))
        log.debug(
            "Built %d descriptors for %s (%d enabled)",
            len(descriptors),
            instance,
            len([desc for desc in descriptors if desc.enabled]),
        )
        return DesiredState(descriptors=descriptors, checksums=checksums)

    ## Implementation Details ##################################################

    def _tls_checksums(self, instance: ManagedInstance) -> Dict[str, str]:
        """Checksums of the TLS secrets. A secret that cannot be read keeps the
        checksum recorded in status.
        """
        if not instance.tls_enabled:
            return {}
        previous = instance.status.get("checksums") or {}
        checksums = {}
        for key in [REPO_SERVER_TLS, CACHE_TLS]:
            secret_name = self.registrar.resource_name(instance, key)
            content = None
            if self.store is not None:
                success, content = self.store.get_object_current_state(
                    kind="Secret",
                    name=secret_name,
                    namespace=instance.target_namespace,
                    api_version="v1",
                )
                if not success:
                    log.warning("Could not read TLS secret %s", secret_name)
            if content is not None:
                checksums[key] = sha256_checksum(content.get("data") or {})
            elif key in previous:
                checksums[key] = previous[key]
        return checksums


def _checksum_annotation(
    checksums: Dict[str, str], keys: List[str]
) -> Optional[Dict[str, str]]:
    values = [checksums[key] for key in keys if key in checksums]
    if not values:
        return None
    sha = hashlib.sha256()
    for value in values:
        sha.update(value.encode("utf-8"))
    return {constants.TLS_CHECKSUM_ANNOTATION: sha.hexdigest()}
