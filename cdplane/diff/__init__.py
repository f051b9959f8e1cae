"""
Field-level diff policies selected per kind through a lookup table
"""

# Local
from . import generic, network, rbac, workload
from .args import merge_args
from .base import DiffPolicy, DiffResult, get_policy, register_policy
from .metadata import retain_platform_metadata
