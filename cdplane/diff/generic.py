"""
Diff policies for configuration objects and objects with no managed spec
"""

# Standard
import copy

# Local
from .base import DiffPolicy, register_policy


@register_policy("ServiceAccount", "metadata")
class MetadataPolicy(DiffPolicy):
    """Only labels, annotations and ownership are managed"""

    name = "metadata"

    def _diff_fields(self, existing, desired, patched, changes):
        pass


@register_policy("ConfigMap", "configmap")
class ConfigMapPolicy(DiffPolicy):
    """ConfigMaps are fully owned by the operator"""

    name = "configmap"

    def _diff_fields(self, existing, desired, patched, changes):
        self._compare(existing, desired, patched, "data", "data", changes)


@register_policy("Secret", "secret")
class SecretPolicy(DiffPolicy):
    """Secrets hold generated credentials, so only missing keys are added.
    Existing values are never regenerated.
    """

    name = "secret"

    def _diff_fields(self, existing, desired, patched, changes):
        existing_data = existing.get("data") or {}
        missing = {
            key: val
            for key, val in (desired.get("data") or {}).items()
            if key not in existing_data
        }
        if missing:
            patched.setdefault("data", {}).update(copy.deepcopy(missing))
            changes.append("missing data keys")
