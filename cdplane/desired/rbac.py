"""
Desired RBAC objects: per-component service accounts and the cluster scoped
roles granted to the controller and server
"""

# Standard
from typing import List

# Local
from ..descriptor import ChildResourceDescriptor
from ..instance import Component, ManagedInstance
from ..ownership import OwnershipRegistrar

# Components running under their own service account
SERVICE_ACCOUNT_COMPONENTS = [
    Component.SERVER,
    Component.REPO_SERVER,
    Component.APPLICATION_CONTROLLER,
    Component.REDIS_HA,
    Component.APPLICATIONSET,
    Component.NOTIFICATIONS,
]


def application_controller_rules() -> List[dict]:
    return [
        {"apiGroups": ["*"], "resources": ["*"], "verbs": ["get", "list", "watch"]},
        {"apiGroups": [""], "resources": ["events"], "verbs": ["create", "patch"]},
    ]


def server_rules() -> List[dict]:
    return [
        {"apiGroups": ["*"], "resources": ["*"], "verbs": ["get", "list", "watch"]},
        {
            "apiGroups": [""],
            "resources": ["secrets", "configmaps"],
            "verbs": ["get", "list", "watch"],
        },
    ]


_CLUSTER_RULES = {
    Component.APPLICATION_CONTROLLER: application_controller_rules,
    Component.SERVER: server_rules,
}


def service_account_name(
    registrar: OwnershipRegistrar, instance: ManagedInstance, component: Component
) -> str:
    return registrar.resource_name(instance, component.value)


def service_accounts(
    registrar: OwnershipRegistrar, instance: ManagedInstance
) -> List[ChildResourceDescriptor]:
    return [
        ChildResourceDescriptor(
            kind="ServiceAccount",
            api_version="v1",
            name=service_account_name(registrar, instance, component),
            namespace=instance.target_namespace,
            component=component,
            enabled=instance.component_enabled(component),
            disable_reason=f"{component.value} disabled",
        )
        for component in SERVICE_ACCOUNT_COMPONENTS
    ]


def cluster_roles(
    registrar: OwnershipRegistrar, instance: ManagedInstance
) -> List[ChildResourceDescriptor]:
    """ClusterRole and ClusterRoleBinding per component. These carry no owner
    reference and are removed by the deletion cascade.
    """
    descriptors = []
    for component, rules in _CLUSTER_RULES.items():
        enabled = instance.component_enabled(component)
        name = registrar.resource_name(instance, component.value, cluster_scoped=True)
        descriptors.append(
            ChildResourceDescriptor(
                kind="ClusterRole",
                api_version="rbac.authorization.k8s.io/v1",
                name=name,
                namespace=None,
                desired={"rules": rules()},
                component=component,
                enabled=enabled,
                disable_reason=f"{component.value} disabled",
            )
        )
        descriptors.append(
            ChildResourceDescriptor(
                kind="ClusterRoleBinding",
                api_version="rbac.authorization.k8s.io/v1",
                name=name,
                namespace=None,
                desired={
                    "roleRef": {
                        "apiGroup": "rbac.authorization.k8s.io",
                        "kind": "ClusterRole",
                        "name": name,
                    },
                    "subjects": [
                        {
                            "kind": "ServiceAccount",
                            "name": service_account_name(
                                registrar, instance, component
                            ),
                            "namespace": instance.target_namespace,
                        }
                    ],
                },
                component=component,
                enabled=enabled,
                disable_reason=f"{component.value} disabled",
            )
        )
    return descriptors
