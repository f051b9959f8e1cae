"""
This module holds the functionality used to represent the status of managed
instances. The schema is:
{
    "phase": "Available" | "Failed" | "Pending" | "Unknown",
    "conditions": [
        {
            "type": "Reconciled",
            "status": "True" | "False",
            "message": "...",
            "lastTransitionTime": "<RFC 3339 timestamp>",
        },
    ],
    "checksums": {"<secret name>": "<sha256>"},
}
"""

# Standard
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple
import copy

# Third Party
from deepdiff import DeepDiff

# First Party
import alog

# Local
from .exceptions import assert_read
from .instance import ManagedInstance
from .store import ObjectStoreBase

log = alog.use_channel("STTUS")

## Public ######################################################################

# The "type" value of the condition managed by the reconcile loop
RECONCILED_CONDITION = "Reconciled"

# The key in the condition used for the timestamp
TIMESTAMP_KEY = "lastTransitionTime"

# Status field holding the TLS secret checksums
CHECKSUMS_KEY = "checksums"


class Phase(Enum):
    """The top-level phase of an instance"""

    # Every child converged on the last pass
    AVAILABLE = "Available"

    # The spec is invalid or a child failed to converge
    FAILED = "Failed"

    # Convergence has not finished yet
    PENDING = "Pending"

    # The instance is being deleted
    UNKNOWN = "Unknown"


def make_condition(
    type_name: str,
    status: bool,
    message: str = "",
    timestamp: Optional[str] = None,
) -> dict:
    """Create a single condition entry"""
    return {
        "type": type_name,
        "status": str(bool(status)),
        "message": message,
        TIMESTAMP_KEY: timestamp or now_timestamp(),
    }


def make_instance_status(
    current_status: Optional[dict],
    phase: Phase,
    message: str = "",
    checksums: Optional[Dict[str, str]] = None,
) -> dict:
    """Create the updated status of an instance from its current status.
    Conditions of other types and other status keys are preserved. The
    transition time of the reconciled condition only moves when its status
    value changes.

    Args:
        current_status:  Optional[dict]
            The current status of the instance
        phase:  Phase
            The phase to report
        message:  str
            Plain-text message explaining the phase
        checksums:  Optional[Dict[str, str]]
            TLS checksums to record. If None, the current ones are kept.

    Returns:
        status:  dict
            The new status object
    """
    status = copy.deepcopy(current_status or {})
    status["phase"] = phase.value

    reconciled = phase in [Phase.AVAILABLE]
    conditions: List[dict] = status.get("conditions") or []
    previous = get_condition(RECONCILED_CONDITION, status)
    timestamp = None
    if previous.get("status") == str(reconciled):
        timestamp = previous.get(TIMESTAMP_KEY)
    new_condition = make_condition(RECONCILED_CONDITION, reconciled, message, timestamp)
    status["conditions"] = [
        cond for cond in conditions if cond.get("type") != RECONCILED_CONDITION
    ] + [new_condition]

    if checksums is not None:
        status[CHECKSUMS_KEY] = dict(checksums)
    return status


def update_instance_status(
    store: ObjectStoreBase,
    instance: ManagedInstance,
    phase: Phase,
    message: str = "",
    checksums: Optional[Dict[str, str]] = None,
) -> Tuple[dict, bool]:
    """Write the status of an instance if it changed meaningfully

    Args:
        store:  ObjectStoreBase
            The store used to get and set status
        instance:  ManagedInstance
            The instance to update
        phase:  Phase
            The phase to report
        message:  str
            Plain-text message explaining the phase
        checksums:  Optional[Dict[str, str]]
            TLS checksums to record

    Returns:
        status:  dict
            The status the instance now has
        written:  bool
            Whether a status write was issued
    """
    success, current_state = store.get_object_current_state(
        kind=instance.kind,
        name=instance.name,
        namespace=instance.namespace,
        api_version=instance.api_version,
    )
    assert_read(success, f"Failed to read current state of {instance}")
    if current_state is None:
        log.debug("%s no longer exists, skipping status update", instance)
        return {}, False

    current_status = current_state.get("status") or {}
    new_status = make_instance_status(current_status, phase, message, checksums)
    if not status_changed(current_status, new_status):
        log.debug2("No status change for %s", instance)
        return current_status, False

    log.debug("Updating status of %s to %s", instance, phase.value)
    log.debug3("(current) %s != (updated) %s", current_status, new_status)
    success, _ = store.set_status(
        kind=instance.kind,
        name=instance.name,
        namespace=instance.namespace,
        api_version=instance.api_version,
        status=new_status,
    )

    # Status is last-write-wins, so a failed write is only a warning
    if not success:
        log.warning("Failed to update status for %s", instance)
        return current_status, False
    return new_status, True


def status_changed(current_status: dict, new_status: dict) -> bool:
    """Compare two status objects to determine if there is a meaningful change
    between them. A meaningful change is any change besides a timestamp.
    """
    if not isinstance(current_status, dict) or not isinstance(new_status, dict):
        return True
    return bool(
        DeepDiff(
            current_status,
            new_status,
            exclude_obj_callback=lambda _, path: path.endswith(f"{TIMESTAMP_KEY}']"),
        )
    )


def get_condition(type_name: str, current_status: dict) -> dict:
    """Extract the given condition type from a status object. Returns an empty
    dict if the condition is not present.
    """
    for condition in (current_status or {}).get("conditions") or []:
        if condition.get("type") == type_name:
            return condition
    return {}


def now_timestamp() -> str:
    """The current UTC time as an RFC 3339 timestamp"""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
