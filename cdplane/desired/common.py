"""
Shared helpers for building desired child objects
"""

# Standard
from typing import Dict, List, Optional
import copy

# First Party
import alog

# Local
from .. import config, constants
from ..instance import Component, ManagedInstance
from ..utils import getenv_case_insensitive

log = alog.use_channel("DSRD")

## Images ######################################################################


def get_image(instance: ManagedInstance, component: Component) -> str:
    """Resolve the image for a component. A spec image and version override the
    configured default.
    """
    spec = instance.component_spec(component)
    if component in [Component.REDIS, Component.REDIS_HA]:
        default = config.images.cache_ha if instance.ha_enabled else config.images.cache
        spec = instance.component_spec(Component.REDIS)
    else:
        default = config.images.platform
    image = spec.get("image")
    version = spec.get("version")
    if not image and not version:
        return default
    base, _, default_tag = default.rpartition(":")
    image = image or base
    return f"{image}:{version or default_tag}"


def get_pull_policy(instance: ManagedInstance) -> str:
    return instance.spec.get("imagePullPolicy") or config.images.image_pull_policy


## Environment #################################################################


def proxy_env() -> List[dict]:
    """Proxy settings of the operator process, looked up ignoring case"""
    env = []
    for name in constants.PROXY_ENV_VARS:
        key, value = getenv_case_insensitive(name)
        if key is not None:
            env.append({"name": key, "value": value})
    return env


def merge_env(*env_lists: Optional[List[dict]]) -> List[dict]:
    """Merge env var lists by name. Later lists win, order of first appearance
    is kept.
    """
    merged: Dict[str, dict] = {}
    for env_list in env_lists:
        for env_var in env_list or []:
            merged[env_var["name"]] = copy.deepcopy(dict(env_var))
    return list(merged.values())


## Pods ########################################################################


def selector_labels(instance: ManagedInstance, component: Component) -> Dict[str, str]:
    return {constants.NAME_LABEL: f"{instance.name}-{component.value}"}


def node_placement(instance: ManagedInstance) -> dict:
    placement = instance.spec.get("nodePlacement") or {}
    pod_spec = {}
    if placement.get("nodeSelector"):
        pod_spec["nodeSelector"] = dict(placement["nodeSelector"])
    if placement.get("tolerations"):
        pod_spec["tolerations"] = copy.deepcopy(list(placement["tolerations"]))
    return pod_spec


def make_container(
    instance: ManagedInstance,
    component: Component,
    name: str,
    args: Optional[List[str]] = None,
    command: Optional[List[str]] = None,
    env: Optional[List[dict]] = None,
    ports: Optional[List[dict]] = None,
    volume_mounts: Optional[List[dict]] = None,
    image: Optional[str] = None,
) -> dict:
    """Build a container with the instance's image, resources and security
    settings applied
    """
    spec = instance.component_spec(component)
    container = {
        "name": name,
        "image": image or get_image(instance, component),
        "imagePullPolicy": get_pull_policy(instance),
        "env": merge_env(env, proxy_env(), spec.get("env")),
        "resources": copy.deepcopy(dict(spec.get("resources") or {})),
        "securityContext": {
            "allowPrivilegeEscalation": False,
            "capabilities": {"drop": ["ALL"]},
            "readOnlyRootFilesystem": True,
            "runAsNonRoot": True,
        },
    }
    if command:
        container["command"] = list(command)
    if args is not None:
        container["args"] = list(args)
    if ports:
        container["ports"] = ports
    if volume_mounts:
        container["volumeMounts"] = volume_mounts
    return container


def make_workload(
    kind: str,
    instance: ManagedInstance,
    component: Component,
    containers: List[dict],
    replicas: int = 1,
    init_containers: Optional[List[dict]] = None,
    service_account: Optional[str] = None,
    volumes: Optional[List[dict]] = None,
    template_annotations: Optional[Dict[str, str]] = None,
    service_name: Optional[str] = None,
) -> dict:
    """Build a Deployment or StatefulSet body"""
    labels = selector_labels(instance, component)
    pod_spec = {"containers": containers}
    pod_spec.update(node_placement(instance))
    if init_containers:
        pod_spec["initContainers"] = init_containers
    if service_account:
        pod_spec["serviceAccountName"] = service_account
    if volumes:
        pod_spec["volumes"] = volumes

    template_metadata = {"labels": dict(labels)}
    if template_annotations:
        template_metadata["annotations"] = dict(template_annotations)

    spec = {
        "replicas": replicas,
        "selector": {"matchLabels": dict(labels)},
        "template": {"metadata": template_metadata, "spec": pod_spec},
    }
    if kind == "StatefulSet":
        spec["serviceName"] = service_name or labels[constants.NAME_LABEL]
    return {"kind": kind, "apiVersion": "apps/v1", "spec": spec}


def make_service(
    instance: ManagedInstance,
    component: Component,
    ports: List[dict],
    service_type: str = "ClusterIP",
    annotations: Optional[Dict[str, str]] = None,
) -> dict:
    service = {
        "kind": "Service",
        "apiVersion": "v1",
        "metadata": {},
        "spec": {
            "type": service_type,
            "selector": selector_labels(instance, component),
            "ports": ports,
        },
    }
    if annotations:
        service["metadata"]["annotations"] = dict(annotations)
    return service


def tcp_port(name: str, port: int, target_port: Optional[int] = None) -> dict:
    return {
        "name": name,
        "port": port,
        "protocol": "TCP",
        "targetPort": target_port or port,
    }
