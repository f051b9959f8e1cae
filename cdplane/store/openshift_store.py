"""
This ObjectStore is responsible for delegating cluster operations to the
openshift library. It is the one that will be used when the operator is running
in the cluster or outside the cluster making live changes.
"""
# Standard
from typing import Callable, Iterator, List, Optional, Tuple
import copy
import threading
import time

# Third Party
from kubernetes import client
from kubernetes.watch import Watch
from openshift.dynamic import DynamicClient
from openshift.dynamic.exceptions import (
    ConflictError,
    DynamicApiError,
    ForbiddenError,
    NotFoundError,
    ResourceNotFoundError,
    ResourceNotUniqueError,
)
from openshift.dynamic.resource import Resource
import kubernetes
import urllib3

# First Party
import alog

# Local
from .. import config
from ..exceptions import WriteConflictError, WriteError, assert_cluster
from .base import ObjectStoreBase, WatchEvent, WatchEventType, resource_identifiers

log = alog.use_channel("OSFTS")

# See this document for value reasonings
# https://github.com/kubernetes-client/python/blob/master/examples/watch/timeout-settings.md
SERVER_WATCH_TIMEOUT = 3600
CLIENT_WATCH_TIMEOUT = 30

# Field manager recorded on every write
FIELD_MANAGER = "cdplane"


class OpenshiftObjectStore(ObjectStoreBase):
    """This ObjectStore uses the openshift DynamicClient to interact with the
    cluster
    """

    def __init__(self, dynamic_client: Optional[DynamicClient] = None):
        """
        Args:
            dynamic_client:  Optional[DynamicClient]
                A preconfigured client. If not given, one is created lazily
                from in-cluster or kubeconfig credentials.
        """
        log.debug("Initializing openshift client")
        self._client = dynamic_client

        # Keep a threading lock for performing status updates. This is necessary
        # to avoid running into 409 Conflict errors if concurrent threads are
        # trying to perform status updates
        self._status_lock = threading.Lock()

    @property
    def client(self) -> DynamicClient:
        """Lazy property access to the client"""
        if self._client is None:
            self._client = self._setup_client()
        return self._client

    ## Reads ###################################################################

    def get_object_current_state(
        self,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
    ) -> Tuple[bool, Optional[dict]]:
        resources = self._get_resource_handle(kind, api_version)
        if not resources:
            return True, None

        try:
            resource = self._with_retries(
                resources.get, name=name, namespace=namespace or None
            )
        except NotFoundError:
            log.debug3(
                "No object named [%s/%s] found in namespace [%s]", kind, name, namespace
            )
            return True, None
        except ForbiddenError:
            log.debug(
                "Fetching objects of kind [%s] forbidden in namespace [%s]",
                kind,
                namespace,
            )
            return False, None
        except (DynamicApiError, urllib3.exceptions.HTTPError) as err:
            log.warning(
                "Failed to read [%s/%s] in [%s]: %s", kind, name, namespace, err
            )
            return False, None

        return True, resource.to_dict()

    def filter_objects_current_state(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
        label_selector: Optional[str] = None,
        field_selector: Optional[str] = None,
    ) -> Tuple[bool, List[dict]]:
        resources = self._get_resource_handle(kind, api_version)
        if not resources:
            return True, []

        try:
            list_obj = self._with_retries(
                resources.get,
                label_selector=label_selector,
                field_selector=field_selector,
                namespace=namespace or None,
            )
        except NotFoundError:
            log.debug3(
                "No objects of kind [%s] found in namespace [%s]", kind, namespace
            )
            return True, []
        except ForbiddenError:
            log.debug(
                "Listing objects of kind [%s] forbidden in namespace [%s]",
                kind,
                namespace,
            )
            return False, []
        except (DynamicApiError, urllib3.exceptions.HTTPError) as err:
            log.warning("Failed to list [%s] in [%s]: %s", kind, namespace, err)
            return False, []

        return True, list_obj.to_dict().get("items", [])

    ## Writes ##################################################################

    @alog.logged_function(log.debug2)
    def create_object(self, resource: dict) -> dict:
        api_version, kind, name, namespace = resource_identifiers(resource)
        resource_handle = self._require_resource_handle(kind, api_version)
        log.debug2("Creating [%s/%s/%s] in %s", api_version, kind, name, namespace)
        return self._write(
            resource_handle.create,
            resource,
            body=_strip_server_fields(resource),
            namespace=namespace,
            field_manager=FIELD_MANAGER,
        )

    @alog.logged_function(log.debug2)
    def update_object(self, resource: dict) -> dict:
        api_version, kind, name, namespace = resource_identifiers(resource)
        resource_handle = self._require_resource_handle(kind, api_version)
        log.debug2("Replacing [%s/%s/%s] in %s", api_version, kind, name, namespace)
        body = copy.deepcopy(resource)
        body.get("metadata", {}).pop("managedFields", None)
        return self._write(
            resource_handle.replace,
            resource,
            body=body,
            name=name,
            namespace=namespace,
            field_manager=FIELD_MANAGER,
        )

    @alog.logged_function(log.debug2)
    def delete_object(
        self,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
    ) -> bool:
        resource_handle = self._get_resource_handle(kind, api_version)
        if resource_handle is None:
            log.debug2("Kind [%s] not served, nothing to delete", kind)
            return False
        try:
            self._with_retries(resource_handle.delete, name=name, namespace=namespace)
            return True
        # If the instance is not found, that's a success without change
        except NotFoundError:
            log.debug3("Object [%s/%s] already absent in %s", kind, name, namespace)
            return False
        except (DynamicApiError, urllib3.exceptions.HTTPError) as err:
            raise WriteError(
                f"Failed to delete {kind}/{name} in {namespace}: {err}"
            ) from err

    def set_status(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        name: str,
        namespace: Optional[str],
        status: dict,
        api_version: Optional[str] = None,
    ) -> Tuple[bool, bool]:
        resource_handle = self._get_resource_handle(kind, api_version)
        if resource_handle is None:
            return False, False

        with self._status_lock:
            try:
                resource = resource_handle.get(name=name, namespace=namespace).to_dict()
                if resource.get("status") == status:
                    log.debug("Status has not changed. No update")
                    return True, False

                # Status is last-write-wins, so always write against the
                # latest resourceVersion
                resource["status"] = status
                resource_handle.status.replace(body=resource)
                log.debug2(
                    "Successfully set the status for [%s/%s] in %s",
                    kind,
                    name,
                    namespace,
                )
                return True, True
            except (DynamicApiError, urllib3.exceptions.HTTPError) as err:
                log.warning(
                    "Failed to set status for [%s/%s] in %s: %s",
                    kind,
                    name,
                    namespace,
                    err,
                )
                return False, False

    ## Watches #################################################################

    def watch_objects(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        api_version: Optional[str] = None,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
        watch_manager: Optional[Watch] = None,
    ) -> Iterator[WatchEvent]:
        watch_manager = watch_manager if watch_manager else Watch()
        resource_handle = self._require_resource_handle(kind, api_version)
        resource_version = None

        while True:
            try:
                for event_obj in watch_manager.stream(
                    resource_handle.get,
                    resource_version=resource_version,
                    namespace=namespace,
                    label_selector=label_selector,
                    serialize=False,
                    timeout_seconds=SERVER_WATCH_TIMEOUT,
                    _request_timeout=CLIENT_WATCH_TIMEOUT,
                ):
                    event_type = WatchEventType(event_obj["type"])
                    resource = event_obj["object"]
                    if not isinstance(resource, dict):
                        resource = resource.to_dict()
                    resource_version = resource.get("metadata", {}).get(
                        "resourceVersion"
                    )
                    yield WatchEvent(event_type, resource)
            except client.exceptions.ApiException as exception:
                if exception.status == 410:
                    log.debug2(
                        "Resource age expired, restarting watch %s/%s",
                        kind,
                        api_version,
                    )
                    resource_version = None
                else:
                    log.info("Unknown ApiException received, re-raising")
                    raise
            except urllib3.exceptions.ReadTimeoutError:
                log.debug4(
                    "Watch Socket closed, restarting watch %s/%s", kind, api_version
                )
            except urllib3.exceptions.ProtocolError:
                log.debug2(
                    "Invalid Chunk from server, restarting watch %s/%s",
                    kind,
                    api_version,
                )

            # This is hidden attribute so probably not best to check
            if watch_manager._stop:  # pylint: disable=protected-access
                log.debug(
                    "Internal watch stopped. Stopping watch for %s/%s",
                    kind,
                    api_version,
                )
                return

    ## Implementation Helpers ##################################################

    @staticmethod
    def _setup_client() -> DynamicClient:
        """Create a DynamicClient that will work based on where the operator is
        running
        """
        # Try in-cluster config
        try:
            log.debug2("Running with in-cluster config")
            kube_config = kubernetes.client.Configuration()
            kubernetes.config.load_incluster_config(client_configuration=kube_config)
            api_client = kubernetes.client.ApiClient(kube_config)
            return DynamicClient(api_client)

        # Fall back to out-of-cluster config
        except kubernetes.config.ConfigException:
            log.debug2("Running with out-of-cluster config")
            return DynamicClient(kubernetes.config.new_client_from_config())

    def has_kind(self, kind: str, api_version: Optional[str] = None) -> bool:
        return self._get_resource_handle(kind, api_version) is not None

    def _get_resource_handle(
        self, kind: str, api_version: Optional[str]
    ) -> Optional[Resource]:
        """Get the openshift resource handle for a specified kind and api_version"""
        resources = None
        try:
            resources = self.client.resources.get(kind=kind, api_version=api_version)
        except (ResourceNotFoundError, ResourceNotUniqueError):
            try:
                resources = self.client.resources.get(
                    short_names=[kind], api_version=api_version
                )
            except (ResourceNotFoundError, ResourceNotUniqueError):
                log.debug(
                    "No objects of kind [%s] found or multiple objects matching request found",
                    kind,
                )
        return resources

    def _require_resource_handle(
        self, kind: str, api_version: Optional[str]
    ) -> Resource:
        resource_handle = self._get_resource_handle(kind, api_version)
        assert_cluster(
            resource_handle is not None,
            f"Failed to fetch resource handle for {api_version}/{kind}",
        )
        return resource_handle

    def _write(self, operation: Callable, resource: dict, **kwargs) -> dict:
        """Run a write and translate client errors into store errors"""
        _, kind, name, namespace = resource_identifiers(resource)
        try:
            return self._with_retries(operation, **kwargs).to_dict()
        except ConflictError as err:
            log.debug2(
                "Write conflict for [%s/%s] in %s: %s", kind, name, namespace, err
            )
            raise WriteConflictError(
                f"Conflict writing {kind}/{name} in {namespace}"
            ) from err
        except (DynamicApiError, urllib3.exceptions.HTTPError) as err:
            raise WriteError(
                f"Failed to write {kind}/{name} in {namespace}: {err}"
            ) from err

    @staticmethod
    def _with_retries(operation: Callable, **kwargs):
        """Execute a client operation, retrying transient server failures with a
        linear backoff. Conflicts and client errors are never retried.
        """
        max_retries = config.store_retries
        for attempt in range(max_retries + 1):
            try:
                return operation(**kwargs)
            except DynamicApiError as err:
                if (err.status or 0) < 500 or attempt == max_retries:
                    raise
                log.debug2("Retrying after server error: %s", err)
            except urllib3.exceptions.HTTPError as err:
                if attempt == max_retries:
                    raise
                log.debug2("Retrying after connection error: %s", err)
            backoff_duration = config.retry_backoff_base_seconds * (attempt + 1)
            log.debug3("Retrying in %fs", backoff_duration)
            time.sleep(backoff_duration)
        return None


def _strip_server_fields(resource: dict) -> dict:
    """Remove fields the server owns before a create"""
    body = copy.deepcopy(resource)
    for key in ["resourceVersion", "uid", "creationTimestamp", "managedFields"]:
        body.get("metadata", {}).pop(key, None)
    body.pop("status", None)
    return body
