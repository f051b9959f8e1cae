"""
Diff policies for RBAC objects
"""

# Local
from .base import DiffPolicy, register_policy


@register_policy("Role", "ClusterRole", "rules")
class RulesPolicy(DiffPolicy):
    """Roles are compared on their policy rules"""

    name = "rules"

    def _diff_fields(self, existing, desired, patched, changes):
        self._compare(existing, desired, patched, "rules", "policy rules", changes)


@register_policy("RoleBinding", "ClusterRoleBinding", "binding")
class BindingPolicy(DiffPolicy):
    """Bindings are compared on subjects and the referenced role"""

    name = "binding"

    def _diff_fields(self, existing, desired, patched, changes):
        self._compare(existing, desired, patched, "subjects", "subjects", changes)
        self._compare(existing, desired, patched, "roleRef", "role ref", changes)
