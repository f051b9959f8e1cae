"""
The ObjectStore abstraction over the cluster
"""

# Local
from .base import ObjectStoreBase, WatchEvent, WatchEventType
from .dry_run_store import DryRunObjectStore
from .openshift_store import OpenshiftObjectStore
