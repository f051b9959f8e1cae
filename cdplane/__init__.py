"""
Package exports
"""

# Local
from . import config, status
from .controller import InstanceController, ReconciliationResult
from .descriptor import ChildResourceDescriptor
from .desired import DesiredState, DesiredStateBuilder
from .exceptions import (
    assert_cluster,
    assert_config,
    assert_read,
    assert_valid,
)
from .finalizer import FinalizerCascade, FinalizerState
from .instance import (
    ClaimKind,
    ClusterPlatform,
    Component,
    ManagedInstance,
    NamespacedPlatform,
    instance_from_manifest,
)
from .ownership import OwnershipRecord, OwnershipRegistrar
from .reconciler import Action, ChildResourceReconciler, ReconcileOutcome
from .registry import InstanceRegistry
from .source_namespaces import NamespaceClaim, SourceNamespaceManager
from .store import DryRunObjectStore, ObjectStoreBase, OpenshiftObjectStore
from .timers import TimerEvent, TimerKey, TimerRegistry, TimerThread
from .worker_pool import ReconcileWorkerPool
