"""
Base types for the per-kind diff policies. Each policy compares only the fields
the operator manages and patches just those fields onto a copy of the live
object so that everything else on the live object is left alone.
"""

# Standard
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Type
import abc
import copy

# Third Party
from deepdiff import DeepDiff

# First Party
import alog

# Local
from ..utils import nested_get, nested_set

log = alog.use_channel("DIFF")


@dataclass
class DiffResult:
    """The outcome of comparing a live object against its desired state

    changed:  Whether any operator-managed field differs
    patched:  The live object with the changed managed fields applied, or None
        when nothing changed
    explanation:  Comma-joined description of every changed field
    """

    changed: bool
    patched: Optional[dict] = None
    explanation: str = ""
    changed_fields: List[str] = field(default_factory=list)


class DiffPolicy(abc.ABC):
    """A DiffPolicy implements the field-level comparison for one family of
    kinds. Subclasses implement _diff_fields and record every difference with
    _compare so that all differences are aggregated into one update.
    """

    # The identifier used to select this policy
    name: str = None

    def diff(self, existing: dict, desired: dict) -> DiffResult:
        """Compare the live object against the desired object

        Args:
            existing:  dict
                The live object as read from the store
            desired:  dict
                The desired object, already stamped with labels and ownership

        Returns:
            result:  DiffResult
                The aggregated result of the comparison
        """
        patched = copy.deepcopy(existing)
        changes = []
        self._diff_metadata(existing, desired, patched, changes)
        self._diff_fields(existing, desired, patched, changes)
        if not changes:
            log.debug3("No managed field changes for %s", _describe(desired))
            return DiffResult(changed=False)

        explanation = ", ".join(changes)
        log.debug2("Changes for %s: %s", _describe(desired), explanation)
        return DiffResult(
            changed=True,
            patched=patched,
            explanation=explanation,
            changed_fields=changes,
        )

    ## Abstract Interface ######################################################

    @abc.abstractmethod
    def _diff_fields(
        self,
        existing: dict,
        desired: dict,
        patched: dict,
        changes: List[str],
    ):
        """Compare the kind-specific managed fields"""

    ## Shared Helpers ##########################################################

    @staticmethod
    def _diff_metadata(
        existing: dict,
        desired: dict,
        patched: dict,
        changes: List[str],
    ):
        """Labels and annotations are compared as a whole. The reconciler has
        already merged platform-reserved keys from the live object into the
        desired object, so those are never dropped here.
        """
        desired_md = desired.get("metadata", {})
        existing_md = existing.get("metadata", {})
        patched_md = patched.setdefault("metadata", {})
        for key, explanation in [
            ("labels", "labels"),
            ("annotations", "annotations"),
        ]:
            if values_differ(existing_md.get(key), desired_md.get(key)):
                patched_md[key] = copy.deepcopy(desired_md.get(key) or {})
                changes.append(explanation)

        if "ownerReferences" in desired_md and values_differ(
            existing_md.get("ownerReferences"), desired_md.get("ownerReferences")
        ):
            patched_md["ownerReferences"] = copy.deepcopy(
                desired_md["ownerReferences"]
            )
            changes.append("owner references")

    @staticmethod
    def _compare(
        existing: dict,
        desired: dict,
        patched: dict,
        path: str,
        explanation: str,
        changes: List[str],
        server_defaulted: bool = False,
    ) -> bool:
        """Compare the value at a dotted path and patch it if it differs

        Args:
            server_defaulted:  bool
                The cluster assigns this field when it is left unset, so an
                unset desired value never counts as a difference

        Returns:
            changed:  bool
                True if the value differed and was patched
        """
        desired_val = nested_get(desired, path)
        if server_defaulted and _normalize(desired_val) is None:
            return False
        if not values_differ(nested_get(existing, path), desired_val):
            return False
        nested_set(patched, path, copy.deepcopy(desired_val))
        changes.append(explanation)
        return True


## Comparison ##################################################################


def _normalize(value: Any) -> Any:
    """Empty containers and None are equivalent for managed fields"""
    if value in (None, {}, [], ""):
        return None
    return value


def values_differ(existing: Any, desired: Any) -> bool:
    """Determine whether two field values differ meaningfully"""
    existing, desired = _normalize(existing), _normalize(desired)
    if existing is None or desired is None:
        return existing is not desired
    return bool(DeepDiff(existing, desired, ignore_order=False))


def _describe(obj: dict) -> str:
    metadata = obj.get("metadata", {})
    return f"{obj.get('kind')}/{metadata.get('name')}"


## Policy Table ################################################################

_POLICIES: Dict[str, DiffPolicy] = {}


def register_policy(
    *identifiers: str,
) -> Callable[[Type[DiffPolicy]], Type[DiffPolicy]]:
    """Decorator registering a policy class under the given identifiers"""

    def decorator(policy_class: Type[DiffPolicy]) -> Type[DiffPolicy]:
        instance = policy_class()
        for identifier in identifiers:
            assert (
                identifier not in _POLICIES
            ), f"Duplicate diff policy registered for {identifier}"
            _POLICIES[identifier] = instance
        return policy_class

    return decorator


def get_policy(identifier: str) -> DiffPolicy:
    """Look up the diff policy for a policy identifier or kind

    Raises:
        KeyError if no policy is registered for the identifier
    """
    if identifier not in _POLICIES:
        raise KeyError(f"No diff policy registered for [{identifier}]")
    return _POLICIES[identifier]


def registered_policies() -> List[str]:
    return sorted(_POLICIES)
