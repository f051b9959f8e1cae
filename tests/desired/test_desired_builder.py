"""
Tests for the desired state builder and the per-component descriptors
"""

# Standard
import copy

# Local
from cdplane import constants
from cdplane.desired import DesiredStateBuilder
from cdplane.diff import get_policy
from cdplane.desired.builder import CACHE_TLS, REPO_SERVER_TLS
from cdplane.instance import instance_from_manifest
from cdplane.store import DryRunObjectStore
from cdplane.test_helpers.helpers import TEST_NAMESPACE, setup_cr

## Helpers #####################################################################


def build(spec=None, store=None, route_available=False, **kwargs):
    instance = instance_from_manifest(setup_cr(spec=spec, **kwargs))
    builder = DesiredStateBuilder(store=store, route_available=route_available)
    return builder.build(instance)


def by_key(desired_state):
    return {desc.describe(): desc for desc in desired_state.descriptors}


def container_args(descriptor, index=0):
    return descriptor.desired["spec"]["template"]["spec"]["containers"][index]["args"]


## Ordering and enablement #####################################################


def test_default_descriptors():
    """Make sure the default instance enables the core components in order and
    describes the optional ones as disabled
    """
    desired = build()
    kinds = [desc.kind for desc in desired.descriptors]
    assert kinds.index("ServiceAccount") < kinds.index("ClusterRole")
    assert kinds.index("ClusterRole") < kinds.index("Deployment")

    descs = by_key(desired)
    enabled = {key for key, desc in descs.items() if desc.enabled}
    assert f"Deployment/{TEST_NAMESPACE}/test-instance-server" in enabled
    assert f"Deployment/{TEST_NAMESPACE}/test-instance-repo-server" in enabled
    assert (
        f"StatefulSet/{TEST_NAMESPACE}/test-instance-application-controller"
        in enabled
    )
    assert f"Deployment/{TEST_NAMESPACE}/test-instance-redis" in enabled
    assert "ClusterRole/test-instance-test-server" in enabled
    assert "ClusterRoleBinding/test-instance-test-application-controller" in enabled

    appset = descs[
        f"Deployment/{TEST_NAMESPACE}/test-instance-applicationset-controller"
    ]
    assert not appset.enabled
    assert appset.disable_reason == "applicationset-controller disabled"
    assert not descs[f"Route/{TEST_NAMESPACE}/test-instance-server"].enabled
    assert not descs[f"Ingress/{TEST_NAMESPACE}/test-instance-server"].enabled


def test_disabled_component_descriptors_kept():
    """Make sure disabling a component keeps its descriptors so that the live
    objects are deleted
    """
    descs = by_key(build({"server": {"enabled": False}}))
    for key in [
        f"Deployment/{TEST_NAMESPACE}/test-instance-server",
        f"Service/{TEST_NAMESPACE}/test-instance-server",
        f"ServiceAccount/{TEST_NAMESPACE}/test-instance-server",
        "ClusterRole/test-instance-test-server",
    ]:
        assert not descs[key].enabled


def test_cluster_scoped_instance_uses_target_namespace():
    desired = build(
        {"targetNamespace": "cd-system"}, kind=constants.CLUSTER_KIND
    )
    for desc in desired.descriptors:
        assert desc.namespace in [None, "cd-system"]
    descs = by_key(desired)
    assert "Deployment/cd-system/test-instance-server" in descs
    assert "ClusterRole/test-instance-cd-system-server" in descs


## Cache #######################################################################


def test_standalone_cache():
    descs = by_key(build())
    standalone = descs[f"Deployment/{TEST_NAMESPACE}/test-instance-redis"]
    containers = standalone.desired["spec"]["template"]["spec"]["containers"]
    assert [container["name"] for container in containers] == ["redis"]
    assert descs[f"Secret/{TEST_NAMESPACE}/test-instance-redis-initial-password"]
    ha = descs[f"StatefulSet/{TEST_NAMESPACE}/test-instance-redis-ha-server"]
    assert not ha.enabled
    assert ha.disable_reason == "HA mode disabled"


def test_ha_cache_replaces_standalone():
    """Make sure HA mode swaps the standalone cache for the HA stateful set"""
    descs = by_key(build({"ha": {"enabled": True}}))
    standalone = descs[f"Deployment/{TEST_NAMESPACE}/test-instance-redis"]
    assert not standalone.enabled
    assert standalone.disable_reason == "HA mode enabled, standalone cache replaced"

    ha = descs[f"StatefulSet/{TEST_NAMESPACE}/test-instance-redis-ha-server"]
    assert ha.enabled
    pod_spec = ha.desired["spec"]["template"]["spec"]
    assert [c["name"] for c in pod_spec["containers"]] == ["redis", "sentinel"]
    assert [c["name"] for c in pod_spec["initContainers"]] == ["config-init"]
    assert ha.desired["spec"]["replicas"] == 3
    assert descs[f"ConfigMap/{TEST_NAMESPACE}/test-instance-redis-ha-configmap"].enabled
    assert descs[f"ServiceAccount/{TEST_NAMESPACE}/test-instance-redis-ha"].enabled


def test_ha_statefulset_matches_defaulted_live_object():
    """Make sure the HA stateful set read back with the fields the API server
    defaults is not seen as changed
    """
    ha = by_key(build({"ha": {"enabled": True}}))[
        f"StatefulSet/{TEST_NAMESPACE}/test-instance-redis-ha-server"
    ]
    live = copy.deepcopy(ha.desired)
    for volume in live["spec"]["template"]["spec"]["volumes"]:
        if "configMap" in volume:
            volume["configMap"].setdefault("defaultMode", 420)
    live["metadata"]["resourceVersion"] = "7"
    assert not get_policy("StatefulSet").diff(live, ha.desired).changed


def test_cache_disabled():
    descs = by_key(build({"redis": {"enabled": False}, "ha": {"enabled": True}}))
    for key in [
        f"Deployment/{TEST_NAMESPACE}/test-instance-redis",
        f"StatefulSet/{TEST_NAMESPACE}/test-instance-redis-ha-server",
        f"Secret/{TEST_NAMESPACE}/test-instance-redis-initial-password",
    ]:
        assert not descs[key].enabled
        assert descs[key].disable_reason == "cache disabled"


## Server ######################################################################


def test_route_requires_route_api():
    spec = {"server": {"route": {"enabled": True}}}
    route_key = f"Route/{TEST_NAMESPACE}/test-instance-server"
    without_api = by_key(build(spec))[route_key]
    assert not without_api.enabled
    assert without_api.disable_reason == "Route API not available"
    assert by_key(build(spec, route_available=True))[route_key].enabled


def test_route_without_host_matches_assigned_host():
    """Make sure a server Route with no configured host is not updated once the
    router has assigned it a host
    """
    spec = {"server": {"route": {"enabled": True}}}
    route = by_key(build(spec, route_available=True))[
        f"Route/{TEST_NAMESPACE}/test-instance-server"
    ]
    assert "host" not in route.desired["spec"]
    live = copy.deepcopy(route.desired)
    live["spec"]["host"] = "test-instance-server-test.apps.example.com"
    assert not get_policy("Route").diff(live, route.desired).changed


def test_ingress_enabled():
    descs = by_key(
        build({"server": {"ingress": {"enabled": True, "host": "cd.example.com"}}})
    )
    ingress = descs[f"Ingress/{TEST_NAMESPACE}/test-instance-server"]
    assert ingress.enabled
    assert ingress.desired["spec"]["rules"][0]["host"] == "cd.example.com"


def test_extra_args_merged():
    """Make sure user args are merged into the generated command line"""
    descs = by_key(
        build(
            {
                "server": {
                    "insecure": True,
                    "extraCommandArgs": ["--redis", "external:6379", "--foo", "bar"],
                }
            }
        )
    )
    args = container_args(descs[f"Deployment/{TEST_NAMESPACE}/test-instance-server"])
    assert args.count("--redis") == 1
    assert args[-4:] == ["--redis", "external:6379", "--foo", "bar"]
    assert "--insecure" in args


def test_source_namespace_args():
    descs = by_key(build({"sourceNamespaces": ["team-a", "team-*"]}))
    args = container_args(descs[f"Deployment/{TEST_NAMESPACE}/test-instance-server"])
    idx = args.index("--application-namespaces")
    assert args[idx + 1] == "team-a,team-*"


def test_notifications_single_replica():
    descs = by_key(build({"notifications": {"enabled": True, "replicas": 3}}))
    notifications = descs[
        f"Deployment/{TEST_NAMESPACE}/test-instance-notifications-controller"
    ]
    assert notifications.desired["spec"]["replicas"] == 1


def test_image_overrides():
    descs = by_key(
        build(
            {
                "version": "ignored",
                "repo": {"image": "example.com/repo", "version": "v9"},
            }
        )
    )
    repo = descs[f"Deployment/{TEST_NAMESPACE}/test-instance-repo-server"]
    image = repo.desired["spec"]["template"]["spec"]["containers"][0]["image"]
    assert image == "example.com/repo:v9"


def test_node_placement():
    descs = by_key(
        build(
            {
                "nodePlacement": {
                    "nodeSelector": {"zone": "a"},
                    "tolerations": [{"key": "dedicated", "operator": "Exists"}],
                }
            }
        )
    )
    pod_spec = descs[f"Deployment/{TEST_NAMESPACE}/test-instance-server"].desired[
        "spec"
    ]["template"]["spec"]
    assert pod_spec["nodeSelector"] == {"zone": "a"}
    assert pod_spec["tolerations"] == [{"key": "dedicated", "operator": "Exists"}]


## TLS Checksums ###############################################################


def test_no_checksums_without_tls():
    assert build().checksums == {}


def test_tls_checksums_annotate_workloads():
    """Make sure the TLS secret checksums are recorded and stamped on the pod
    templates, and change when the secret changes
    """
    secret = {
        "kind": "Secret",
        "apiVersion": "v1",
        "metadata": {
            "name": "test-instance-repo-server-tls",
            "namespace": TEST_NAMESPACE,
        },
        "data": {"tls.crt": "abc"},
    }
    store = DryRunObjectStore([secret])
    desired = build({"tls": {"enabled": True}}, store=store)
    assert set(desired.checksums) == {REPO_SERVER_TLS}
    repo = by_key(desired)[f"Deployment/{TEST_NAMESPACE}/test-instance-repo-server"]
    annotations = repo.desired["spec"]["template"]["metadata"]["annotations"]
    first = annotations[constants.TLS_CHECKSUM_ANNOTATION]

    _, current = store.get_object_current_state(
        "Secret", secret["metadata"]["name"], TEST_NAMESPACE
    )
    current["data"] = {"tls.crt": "def"}
    store.update_object(current)
    repo = by_key(build({"tls": {"enabled": True}}, store=store))[
        f"Deployment/{TEST_NAMESPACE}/test-instance-repo-server"
    ]
    annotations = repo.desired["spec"]["template"]["metadata"]["annotations"]
    assert annotations[constants.TLS_CHECKSUM_ANNOTATION] != first


def test_tls_checksums_fall_back_on_status():
    desired = build(
        {"tls": {"enabled": True}},
        status={"checksums": {CACHE_TLS: "previous"}},
    )
    assert desired.checksums == {CACHE_TLS: "previous"}
