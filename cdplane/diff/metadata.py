"""
Preservation of platform-owned metadata on live objects
"""

# Standard
from typing import Dict, Optional

# First Party
import alog

# Local
from .. import config
from ..utils import is_reserved_key

log = alog.use_channel("DIFF")


def retain_platform_metadata(existing: dict, desired: dict) -> dict:
    """Merge labels and annotations from the live object whose keys belong to
    the platform (kubernetes.io, k8s.io, openshift.io) into the desired object
    when the desired object does not set them. The desired object is updated in
    place and returned.

    Args:
        existing:  dict
            The live object
        desired:  dict
            The desired object

    Returns:
        desired:  dict
            The desired object with platform metadata retained
    """
    existing_md = existing.get("metadata", {})
    desired_md = desired.setdefault("metadata", {})
    for key in ["labels", "annotations"]:
        retained = _platform_entries(existing_md.get(key), desired_md.get(key))
        if retained:
            log.debug4("Retaining %s %s", key, list(retained))
            desired_md.setdefault(key, {}).update(retained)
    return desired


def _platform_entries(
    live: Optional[Dict[str, str]],
    desired: Optional[Dict[str, str]],
) -> Dict[str, str]:
    desired = desired or {}
    return {
        key: value
        for key, value in (live or {}).items()
        if key not in desired and _is_passthrough(key)
    }


def _is_passthrough(key: str) -> bool:
    return is_reserved_key(key) or any(
        prefix in key for prefix in config.cluster_passthrough_annotations
    )
