"""
Desired objects for the server, repository server, application controller,
app-set controller and notifications controller
"""

# Standard
from typing import Dict, List, Optional

# First Party
import alog

# Local
from .. import constants
from ..descriptor import ChildResourceDescriptor
from ..diff import merge_args
from ..instance import ClaimKind, Component, ManagedInstance
from ..ownership import OwnershipRegistrar
from ..utils import nested_get
from .cache import cache_host
from .common import make_container, make_service, make_workload, tcp_port
from .rbac import service_account_name

log = alog.use_channel("DSRD")

SERVER_HTTP_PORT = 8080
SERVER_HTTPS_PORT = 8083
REPO_SERVER_PORT = 8081
APPSET_PORT = 7000
NOTIFICATIONS_METRICS_PORT = 9001


def repo_server_address(
    registrar: OwnershipRegistrar, instance: ManagedInstance
) -> str:
    name = registrar.resource_name(instance, Component.REPO_SERVER.value)
    return f"{name}:{REPO_SERVER_PORT}"


def _extra_args(instance: ManagedInstance, component: Component) -> List[str]:
    return list(instance.component_spec(component).get("extraCommandArgs") or [])


def _namespace_args(instance: ManagedInstance, claim_kind: ClaimKind) -> List[str]:
    patterns = instance.source_namespaces(claim_kind)
    if not patterns:
        return []
    return ["--application-namespaces", ",".join(patterns)]


def _descriptor(
    kind: str,
    name: str,
    instance: ManagedInstance,
    component: Component,
    desired: dict,
    api_version: str = "v1",
    enabled: Optional[bool] = None,
    disable_reason: Optional[str] = None,
) -> ChildResourceDescriptor:
    if enabled is None:
        enabled = instance.component_enabled(component)
    return ChildResourceDescriptor(
        kind=kind,
        api_version=api_version,
        name=name,
        namespace=instance.target_namespace,
        desired=desired,
        component=component,
        enabled=enabled,
        disable_reason=disable_reason or f"{component.value} disabled",
    )


## Server ######################################################################


def server_descriptors(
    registrar: OwnershipRegistrar,
    instance: ManagedInstance,
    checksum_annotations: Optional[Dict[str, str]] = None,
    route_available: bool = False,
) -> List[ChildResourceDescriptor]:
    component = Component.SERVER
    name = registrar.resource_name(instance, component.value)
    spec = instance.component_spec(component)

    base_args = [
        "--repo-server",
        repo_server_address(registrar, instance),
        "--redis",
        cache_host(registrar, instance),
    ] + _namespace_args(instance, ClaimKind.APPS)
    if spec.get("insecure"):
        base_args.append("--insecure")
    container = make_container(
        instance,
        component,
        "server",
        command=["cdplane-server"],
        args=merge_args(base_args, _extra_args(instance, component)),
        ports=[
            {"containerPort": SERVER_HTTP_PORT},
            {"containerPort": SERVER_HTTPS_PORT},
        ],
    )
    workload = make_workload(
        "Deployment",
        instance,
        component,
        containers=[container],
        replicas=spec.get("replicas", 1),
        service_account=service_account_name(registrar, instance, component),
        template_annotations=checksum_annotations,
    )

    # The serving certificate annotation is only understood on OpenShift
    annotations = {}
    if instance.tls_enabled and route_available and spec.get("autoTLS") == "openshift":
        annotations[constants.AUTO_TLS_ANNOTATION] = f"{name}-tls"
    service = make_service(
        instance,
        component,
        [
            tcp_port("http", 80, SERVER_HTTP_PORT),
            tcp_port("https", 443, SERVER_HTTP_PORT),
        ],
        service_type=nested_get(spec, "service.type") or "ClusterIP",
        annotations=annotations,
    )

    route_reason = "route disabled"
    if instance.route_enabled and not route_available:
        log.warning(
            "Route requested for %s but the Route API is not available", instance
        )
        route_reason = "Route API not available"
    route = {
        "spec": {
            "to": {"kind": "Service", "name": name, "weight": 100},
            "port": {"targetPort": "https" if instance.tls_enabled else "http"},
            "wildcardPolicy": "None",
        }
    }
    if nested_get(spec, "route.host"):
        route["spec"]["host"] = nested_get(spec, "route.host")
    if instance.tls_enabled:
        route["spec"]["tls"] = {
            "termination": "passthrough",
            "insecureEdgeTerminationPolicy": "Redirect",
        }

    host = nested_get(spec, "ingress.host") or f"{name}.{instance.target_namespace}"
    ingress = {
        "spec": {
            "rules": [
                {
                    "host": host,
                    "http": {
                        "paths": [
                            {
                                "path": nested_get(spec, "ingress.path") or "/",
                                "pathType": "ImplementationSpecific",
                                "backend": {
                                    "service": {"name": name, "port": {"name": "http"}}
                                },
                            }
                        ]
                    },
                }
            ]
        }
    }
    if nested_get(spec, "ingress.ingressClassName"):
        ingress["spec"]["ingressClassName"] = nested_get(
            spec, "ingress.ingressClassName"
        )
    if instance.tls_enabled:
        ingress["spec"]["tls"] = [{"hosts": [host], "secretName": f"{name}-tls"}]

    return [
        _descriptor("Service", name, instance, component, service),
        _descriptor("Deployment", name, instance, component, workload, "apps/v1"),
        _descriptor(
            "Route",
            name,
            instance,
            component,
            route,
            "route.openshift.io/v1",
            enabled=instance.route_enabled and route_available,
            disable_reason=route_reason,
        ),
        _descriptor(
            "Ingress",
            name,
            instance,
            component,
            ingress,
            "networking.k8s.io/v1",
            enabled=instance.ingress_enabled,
            disable_reason="ingress disabled",
        ),
    ]


## Repo Server #################################################################


def repo_server_descriptors(
    registrar: OwnershipRegistrar,
    instance: ManagedInstance,
    checksum_annotations: Optional[Dict[str, str]] = None,
) -> List[ChildResourceDescriptor]:
    component = Component.REPO_SERVER
    name = registrar.resource_name(instance, component.value)
    base_args = ["--redis", cache_host(registrar, instance)]
    container = make_container(
        instance,
        component,
        "repo-server",
        command=["cdplane-repo-server"],
        args=merge_args(base_args, _extra_args(instance, component)),
        ports=[{"containerPort": REPO_SERVER_PORT, "name": "server"}],
    )
    workload = make_workload(
        "Deployment",
        instance,
        component,
        containers=[container],
        replicas=instance.component_spec(component).get("replicas", 1),
        service_account=service_account_name(registrar, instance, component),
        template_annotations=checksum_annotations,
    )
    service = make_service(
        instance, component, [tcp_port("server", REPO_SERVER_PORT)]
    )
    return [
        _descriptor("Service", name, instance, component, service),
        _descriptor("Deployment", name, instance, component, workload, "apps/v1"),
    ]


## Application Controller ######################################################


def application_controller_descriptors(
    registrar: OwnershipRegistrar,
    instance: ManagedInstance,
    checksum_annotations: Optional[Dict[str, str]] = None,
) -> List[ChildResourceDescriptor]:
    component = Component.APPLICATION_CONTROLLER
    name = registrar.resource_name(instance, component.value)
    spec = instance.component_spec(component)
    base_args = [
        "--operation-processors",
        str(spec.get("operationProcessors", 10)),
        "--status-processors",
        str(spec.get("statusProcessors", 20)),
        "--redis",
        cache_host(registrar, instance),
        "--repo-server",
        repo_server_address(registrar, instance),
    ] + _namespace_args(instance, ClaimKind.APPS)
    container = make_container(
        instance,
        component,
        "application-controller",
        command=["cdplane-application-controller"],
        args=merge_args(base_args, _extra_args(instance, component)),
        ports=[{"containerPort": 8082}],
    )
    workload = make_workload(
        "StatefulSet",
        instance,
        component,
        containers=[container],
        service_account=service_account_name(registrar, instance, component),
        template_annotations=checksum_annotations,
    )
    return [
        _descriptor("StatefulSet", name, instance, component, workload, "apps/v1")
    ]


## App-Set Controller ##########################################################


def applicationset_descriptors(
    registrar: OwnershipRegistrar,
    instance: ManagedInstance,
) -> List[ChildResourceDescriptor]:
    component = Component.APPLICATIONSET
    name = registrar.resource_name(instance, component.value)
    base_args = ["--repo-server", repo_server_address(registrar, instance)]
    patterns = instance.source_namespaces(ClaimKind.APPSETS)
    if patterns:
        base_args += ["--applicationset-namespaces", ",".join(patterns)]
    container = make_container(
        instance,
        component,
        "applicationset-controller",
        command=["cdplane-applicationset-controller"],
        args=merge_args(base_args, _extra_args(instance, component)),
        ports=[{"containerPort": APPSET_PORT, "name": "webhook"}],
    )
    workload = make_workload(
        "Deployment",
        instance,
        component,
        containers=[container],
        service_account=service_account_name(registrar, instance, component),
    )
    service = make_service(instance, component, [tcp_port("webhook", APPSET_PORT)])
    return [
        _descriptor("Service", name, instance, component, service),
        _descriptor("Deployment", name, instance, component, workload, "apps/v1"),
    ]


## Notifications Controller ####################################################


def notifications_descriptors(
    registrar: OwnershipRegistrar,
    instance: ManagedInstance,
) -> List[ChildResourceDescriptor]:
    component = Component.NOTIFICATIONS
    name = registrar.resource_name(instance, component.value)
    replicas = instance.component_spec(component).get("replicas", 1)
    if replicas > 1:
        log.warning(
            "%s requests %d notifications replicas; only one is supported",
            instance,
            replicas,
        )
        replicas = 1
    log_level = instance.component_spec(component).get("logLevel", "info")
    base_args = ["--loglevel", log_level]
    patterns = instance.source_namespaces(ClaimKind.NOTIFICATIONS)
    if patterns:
        base_args += ["--application-namespaces", ",".join(patterns)]
    container = make_container(
        instance,
        component,
        "notifications-controller",
        command=["cdplane-notifications"],
        args=merge_args(base_args, _extra_args(instance, component)),
        ports=[{"containerPort": NOTIFICATIONS_METRICS_PORT, "name": "metrics"}],
    )
    workload = make_workload(
        "Deployment",
        instance,
        component,
        containers=[container],
        replicas=replicas,
        service_account=service_account_name(registrar, instance, component),
    )
    return [
        _descriptor("Deployment", name, instance, component, workload, "apps/v1")
    ]
