"""
Desired objects for the cache component. With HA mode off the cache runs as a
single-container Deployment. With HA mode on it runs as a StatefulSet holding
the cache and sentinel containers plus a config init container, and the
Deployment is removed.
"""

# Standard
from typing import Dict, List, Optional
import base64
import secrets

# First Party
import alog

# Local
from ..descriptor import ChildResourceDescriptor
from ..instance import Component, ManagedInstance
from ..ownership import OwnershipRegistrar
from .common import (
    make_container,
    make_service,
    make_workload,
    tcp_port,
)
from .rbac import service_account_name

log = alog.use_channel("DSRD")

REDIS_PORT = 6379
SENTINEL_PORT = 26379
HA_REPLICAS = 3


def redis_args(use_tls: bool, standalone: bool = True) -> List[str]:
    args = ["--save", "", "--appendonly", "no"] if standalone else []
    args += ["--requirepass", "$(REDIS_PASSWORD)"]
    if use_tls:
        args += [
            "--tls-port",
            str(REDIS_PORT),
            "--port",
            "0",
            "--tls-cert-file",
            "/app/config/redis/tls/tls.crt",
            "--tls-key-file",
            "/app/config/redis/tls/tls.key",
            "--tls-auth-clients",
            "no",
        ]
    return args


def cache_host(registrar: OwnershipRegistrar, instance: ManagedInstance) -> str:
    """The address clients use to reach the cache"""
    if instance.ha_enabled:
        name = registrar.resource_name(instance, "redis-ha")
    else:
        name = registrar.resource_name(instance, Component.REDIS.value)
    return f"{name}:{REDIS_PORT}"


def password_secret_name(
    registrar: OwnershipRegistrar, instance: ManagedInstance
) -> str:
    return registrar.resource_name(instance, "redis-initial-password")


def _password_env(registrar, instance) -> List[dict]:
    return [
        {
            "name": "REDIS_PASSWORD",
            "valueFrom": {
                "secretKeyRef": {
                    "name": password_secret_name(registrar, instance),
                    "key": "admin.password",
                }
            },
        }
    ]


def cache_descriptors(
    registrar: OwnershipRegistrar,
    instance: ManagedInstance,
    checksum_annotations: Optional[Dict[str, str]] = None,
) -> List[ChildResourceDescriptor]:
    """All descriptors for the cache component, enabled or not"""
    namespace = instance.target_namespace
    cache_enabled = instance.component_enabled(Component.REDIS)
    ha_active = instance.component_enabled(Component.REDIS_HA)
    standalone_active = cache_enabled and not instance.ha_enabled

    if not cache_enabled:
        standalone_reason = ha_reason = "cache disabled"
    else:
        standalone_reason = "HA mode enabled, standalone cache replaced"
        ha_reason = "HA mode disabled"

    password = base64.b64encode(secrets.token_urlsafe(24).encode("utf-8")).decode(
        "utf-8"
    )
    descriptors = [
        ChildResourceDescriptor(
            kind="Secret",
            api_version="v1",
            name=password_secret_name(registrar, instance),
            namespace=namespace,
            desired={"type": "Opaque", "data": {"admin.password": password}},
            component=Component.REDIS,
            enabled=cache_enabled,
            disable_reason="cache disabled",
        )
    ]

    # Standalone cache
    standalone_name = registrar.resource_name(instance, Component.REDIS.value)
    descriptors.append(
        ChildResourceDescriptor(
            kind="Deployment",
            api_version="apps/v1",
            name=standalone_name,
            namespace=namespace,
            desired=make_workload(
                "Deployment",
                instance,
                Component.REDIS,
                containers=[
                    make_container(
                        instance,
                        Component.REDIS,
                        "redis",
                        args=redis_args(instance.tls_enabled),
                        env=_password_env(registrar, instance),
                        ports=[{"containerPort": REDIS_PORT, "name": "redis"}],
                    )
                ],
                template_annotations=checksum_annotations,
            ),
            component=Component.REDIS,
            enabled=standalone_active,
            disable_reason=standalone_reason,
        )
    )
    descriptors.append(
        ChildResourceDescriptor(
            kind="Service",
            api_version="v1",
            name=standalone_name,
            namespace=namespace,
            desired=make_service(
                instance, Component.REDIS, [tcp_port("tcp-redis", REDIS_PORT)]
            ),
            component=Component.REDIS,
            enabled=standalone_active,
            disable_reason=standalone_reason,
        )
    )

    # HA cache
    ha_name = registrar.resource_name(instance, "redis-ha-server")
    config_name = registrar.resource_name(instance, "redis-ha-configmap")
    descriptors.append(
        ChildResourceDescriptor(
            kind="ConfigMap",
            api_version="v1",
            name=config_name,
            namespace=namespace,
            desired={"data": _ha_config(registrar, instance)},
            component=Component.REDIS_HA,
            enabled=ha_active,
            disable_reason=ha_reason,
        )
    )
    descriptors.append(
        ChildResourceDescriptor(
            kind="Service",
            api_version="v1",
            name=registrar.resource_name(instance, "redis-ha"),
            namespace=namespace,
            desired=make_service(
                instance,
                Component.REDIS_HA,
                [
                    tcp_port("tcp-server", REDIS_PORT),
                    tcp_port("tcp-sentinel", SENTINEL_PORT),
                ],
            ),
            component=Component.REDIS_HA,
            enabled=ha_active,
            disable_reason=ha_reason,
        )
    )
    descriptors.append(
        ChildResourceDescriptor(
            kind="StatefulSet",
            api_version="apps/v1",
            name=ha_name,
            namespace=namespace,
            desired=_ha_statefulset(
                registrar, instance, config_name, checksum_annotations
            ),
            component=Component.REDIS_HA,
            enabled=ha_active,
            disable_reason=ha_reason,
        )
    )
    return descriptors


def _ha_config(
    registrar: OwnershipRegistrar, instance: ManagedInstance
) -> Dict[str, str]:
    master_group = registrar.resource_name(instance, "redis-ha")
    return {
        "redis.conf": "\n".join(
            [
                "dir \"/data\"",
                "maxmemory 0",
                "maxmemory-policy volatile-lru",
                "min-replicas-max-lag 5",
                "min-replicas-to-write 1",
                "rdbchecksum yes",
                "rdbcompression yes",
                "repl-diskless-sync yes",
                "save \"\"",
            ]
        ),
        "sentinel.conf": "\n".join(
            [
                "dir \"/data\"",
                f"sentinel down-after-milliseconds {master_group} 10000",
                f"sentinel failover-timeout {master_group} 180000",
                "maxclients 10000",
                f"sentinel parallel-syncs {master_group} 5",
            ]
        ),
    }


def _ha_statefulset(
    registrar: OwnershipRegistrar,
    instance: ManagedInstance,
    config_name: str,
    checksum_annotations: Optional[Dict[str, str]],
) -> dict:
    data_mounts = [
        {"name": "data", "mountPath": "/data"},
        {"name": "health", "mountPath": "/health"},
    ]
    password_env = _password_env(registrar, instance)
    redis = make_container(
        instance,
        Component.REDIS_HA,
        "redis",
        command=["redis-server"],
        args=["/data/conf/redis.conf"]
        + redis_args(instance.tls_enabled, standalone=False),
        env=password_env,
        ports=[{"containerPort": REDIS_PORT, "name": "redis"}],
        volume_mounts=data_mounts,
    )
    sentinel = make_container(
        instance,
        Component.REDIS_HA,
        "sentinel",
        command=["redis-sentinel"],
        args=["/data/conf/sentinel.conf"],
        env=password_env
        + [
            {"name": f"SENTINEL_ID_{i}", "value": f"sentinel-{i}"}
            for i in range(HA_REPLICAS)
        ],
        ports=[{"containerPort": SENTINEL_PORT, "name": "sentinel"}],
        volume_mounts=data_mounts,
    )
    config_init = make_container(
        instance,
        Component.REDIS_HA,
        "config-init",
        command=["sh"],
        args=["/readonly-config/init.sh"],
        env=password_env,
        volume_mounts=[
            {"name": "config", "mountPath": "/readonly-config", "readOnly": True},
            {"name": "data", "mountPath": "/data"},
        ],
    )
    annotations = dict(checksum_annotations or {})
    return make_workload(
        "StatefulSet",
        instance,
        Component.REDIS_HA,
        containers=[redis, sentinel],
        init_containers=[config_init],
        replicas=HA_REPLICAS,
        service_account=service_account_name(registrar, instance, Component.REDIS_HA),
        volumes=[
            # Mode 0644 is what the API server fills in when unset
            {
                "name": "config",
                "configMap": {"name": config_name, "defaultMode": 420},
            },
            {"name": "health", "emptyDir": {}},
            {"name": "data", "emptyDir": {}},
        ],
        template_annotations=annotations,
        service_name=registrar.resource_name(instance, "redis-ha"),
    )
