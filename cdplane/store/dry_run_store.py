"""
The DryRunObjectStore implements the ObjectStore interface but does not
actually interact with the cluster and instead holds the state of the cluster in
a local map.
"""

# Standard
from datetime import datetime, timedelta
from queue import Empty, Queue
from threading import RLock
from typing import Callable, Iterator, List, Optional, Tuple
import copy
import itertools
import uuid

# First Party
import alog

# Local
from ..exceptions import WriteConflictError, WriteError
from ..utils import match_label_selector
from .base import ObjectStoreBase, WatchEvent, WatchEventType, resource_identifiers

log = alog.use_channel("DRY-RUN")


class DryRunObjectStore(ObjectStoreBase):
    """
    Object store which keeps the cluster in memory. Objects are stored as
    [namespace][kind][api_version][name] with None as the namespace of cluster
    scoped objects.
    """

    def __init__(
        self,
        resources: Optional[List[dict]] = None,
        strict_resource_version: bool = True,
    ):
        """
        Args:
            resources:  Optional[List[dict]]
                Objects to pre-populate the cluster with
            strict_resource_version:  bool
                If true, updates carrying a stale resourceVersion are rejected
                with a WriteConflictError
        """
        self.strict_resource_version = strict_resource_version
        self._cluster_content = {}
        self._lock = RLock()
        self._resource_versions = itertools.count(1)
        self._watches: List[Tuple[str, Callable[[WatchEvent], None]]] = []

        for resource in resources or []:
            self._store(copy.deepcopy(resource), notify=False)

    ## Interface ###############################################################

    def get_object_current_state(self, kind, name, namespace=None, api_version=None):
        log.debug2(
            "DRY RUN get_object_current_state of [%s/%s] in [%s]", kind, name, namespace
        )
        with self._lock:
            matches = [
                entries[name]
                for api_ver, entries in self._cluster_content.get(namespace, {})
                .get(kind, {})
                .items()
                if name in entries and (api_version is None or api_ver == api_version)
            ]
        log.debug3(
            "Found %d matches for [%s/%s] in %s", len(matches), kind, name, namespace
        )
        if len(matches) == 1:
            return True, copy.deepcopy(matches[0])
        return True, None

    def filter_objects_current_state(
        self,
        kind,
        namespace=None,
        api_version=None,
        label_selector=None,
        field_selector=None,
    ):  # pylint: disable=too-many-arguments
        log.debug2(
            "DRY RUN filter_objects_current_state of [%s] in [%s]", kind, namespace
        )
        matches = []
        with self._lock:
            kind_entries = self._cluster_content.get(namespace, {}).get(kind, {})
            for api_ver, entries in kind_entries.items():
                if api_version is not None and api_ver != api_version:
                    continue
                for resource in entries.values():
                    labels = resource.get("metadata", {}).get("labels", {})
                    if label_selector and not match_label_selector(
                        labels, label_selector
                    ):
                        continue
                    if field_selector and not match_label_selector(
                        _convert_dict_to_dot(resource), field_selector
                    ):
                        continue
                    matches.append(copy.deepcopy(resource))
        return True, matches

    def create_object(self, resource):
        api_version, kind, name, namespace = resource_identifiers(resource)
        log.debug("DRY RUN create [%s/%s/%s/%s]", namespace, kind, api_version, name)
        with self._lock:
            if self._get_entry(kind, name, namespace, api_version) is not None:
                raise WriteConflictError(
                    f"{kind}/{name} already exists in namespace {namespace}"
                )
            resource = copy.deepcopy(resource)
            metadata = resource.setdefault("metadata", {})
            metadata["uid"] = str(uuid.uuid4())
            metadata["creationTimestamp"] = datetime.now().isoformat()
            return copy.deepcopy(self._store(resource))

    def update_object(self, resource):
        api_version, kind, name, namespace = resource_identifiers(resource)
        log.debug("DRY RUN update [%s/%s/%s/%s]", namespace, kind, api_version, name)
        with self._lock:
            current = self._get_entry(kind, name, namespace, api_version)
            if current is None:
                raise WriteError(f"{kind}/{name} not found in namespace {namespace}")
            requested_version = resource.get("metadata", {}).get("resourceVersion")
            current_version = current["metadata"].get("resourceVersion")
            if (
                self.strict_resource_version
                and requested_version
                and requested_version != current_version
            ):
                log.debug(
                    "Rejecting update of %s/%s: resourceVersion %s != %s",
                    kind,
                    name,
                    requested_version,
                    current_version,
                )
                raise WriteConflictError(
                    f"{kind}/{name} has been modified, resourceVersion "
                    f"{requested_version} is stale"
                )
            resource = copy.deepcopy(resource)
            metadata = resource.setdefault("metadata", {})
            for key in ["uid", "creationTimestamp", "deletionTimestamp"]:
                if key in current["metadata"]:
                    metadata[key] = current["metadata"][key]
            if "status" in current and "status" not in resource:
                resource["status"] = current["status"]
            stored = self._store(resource)

            # An object marked for deletion is removed once its finalizers clear
            if metadata.get("deletionTimestamp") and not metadata.get("finalizers"):
                self._remove(namespace, kind, stored["apiVersion"], name)
            return copy.deepcopy(stored)

    def delete_object(self, kind, name, namespace=None, api_version=None):
        log.debug("DRY RUN delete [%s/%s/%s/%s]", namespace, kind, api_version, name)
        with self._lock:
            return self._delete(kind, name, namespace, api_version)

    def _delete(self, kind, name, namespace, api_version) -> bool:
        with self._lock:
            current = self._get_entry(kind, name, namespace, api_version)
            if current is None:
                return False
            if current["metadata"].get("finalizers"):
                if not current["metadata"].get("deletionTimestamp"):
                    current["metadata"]["deletionTimestamp"] = datetime.now().strftime(
                        "%Y-%m-%dT%H:%M:%SZ"
                    )
                    current["metadata"]["resourceVersion"] = self._next_version()
                    self._notify(WatchEventType.MODIFIED, current)
                return True
            self._remove(namespace, kind, current.get("apiVersion"), name)
            return True

    def set_status(
        self,
        kind,
        name,
        namespace,
        status,
        api_version=None,
    ):  # pylint: disable=too-many-arguments
        log.debug2(
            "DRY RUN set_status of [%s.%s/%s] in %s", api_version, kind, name, namespace
        )
        with self._lock:
            current = self._get_entry(kind, name, namespace, api_version)
            if current is None:
                log.debug("Did not find [%s/%s] in %s", kind, name, namespace)
                return False, False
            prev_status = current.get("status")
            current["status"] = copy.deepcopy(status)
            current["metadata"]["resourceVersion"] = self._next_version()
            self._notify(WatchEventType.MODIFIED, current)
            return True, prev_status != status

    def watch_objects(
        self,
        kind,
        api_version=None,
        namespace=None,
        label_selector=None,
        timeout: Optional[int] = 15,
    ) -> Iterator[WatchEvent]:
        """Watch the in-memory cluster by registering a callback. The watch
        ends after timeout seconds without events.
        """
        event_queue = Queue()

        def matches(resource: dict) -> bool:
            res_api_version, res_kind, _, res_namespace = resource_identifiers(
                resource
            )
            return (
                res_kind == kind
                and (api_version is None or res_api_version == api_version)
                and (namespace is None or res_namespace == namespace)
                and (
                    not label_selector
                    or match_label_selector(
                        resource.get("metadata", {}).get("labels"), label_selector
                    )
                )
            )

        def callback(event: WatchEvent):
            if matches(event.resource):
                event_queue.put(event)

        with self._lock:
            initial = [
                resource
                for kind_entries in self._cluster_content.values()
                for api_entries in kind_entries.get(kind, {}).values()
                for resource in api_entries.values()
                if matches(resource)
            ]
            watch_key = str(uuid.uuid4())
            self._watches.append((watch_key, callback))

        try:
            for resource in initial:
                yield WatchEvent(WatchEventType.ADDED, copy.deepcopy(resource))
            end_time = datetime.now() + timedelta(seconds=timeout or 0)
            while timeout is None or datetime.now() < end_time:
                try:
                    yield event_queue.get(timeout=1 if timeout is None else timeout)
                    if timeout is not None:
                        end_time = datetime.now() + timedelta(seconds=timeout)
                except Empty:
                    pass
        finally:
            with self._lock:
                self._watches = [
                    watch for watch in self._watches if watch[0] != watch_key
                ]

    ## Implementation Details ##################################################

    def _next_version(self) -> str:
        return str(next(self._resource_versions))

    def _get_entry(self, kind, name, namespace, api_version) -> Optional[dict]:
        for api_ver, entries in (
            self._cluster_content.get(namespace, {}).get(kind, {}).items()
        ):
            if name in entries and (api_version is None or api_ver == api_version):
                return entries[name]
        return None

    def _store(self, resource: dict, notify: bool = True) -> dict:
        api_version, kind, name, namespace = resource_identifiers(resource)
        metadata = resource.setdefault("metadata", {})
        metadata.setdefault("uid", str(uuid.uuid4()))
        metadata["resourceVersion"] = self._next_version()
        entries = (
            self._cluster_content.setdefault(namespace, {})
            .setdefault(kind, {})
            .setdefault(api_version, {})
        )
        event_type = (
            WatchEventType.MODIFIED if name in entries else WatchEventType.ADDED
        )
        entries[name] = resource
        if notify:
            self._notify(event_type, resource)
        return resource

    def _remove(self, namespace, kind, api_version, name):
        resource = self._cluster_content[namespace][kind][api_version].pop(name)
        if not self._cluster_content[namespace][kind][api_version]:
            del self._cluster_content[namespace][kind][api_version]
        if not self._cluster_content[namespace][kind]:
            del self._cluster_content[namespace][kind]
        if not self._cluster_content[namespace]:
            del self._cluster_content[namespace]
        self._notify(WatchEventType.DELETED, resource)
        self._collect_garbage(resource["metadata"].get("uid"))

    def _collect_garbage(self, owner_uid: Optional[str]):
        """Remove objects whose controller owner was just removed"""
        if not owner_uid:
            return
        orphans = [
            resource
            for kind_entries in self._cluster_content.values()
            for api_entries in kind_entries.values()
            for entries in api_entries.values()
            for resource in entries.values()
            if any(
                ref.get("uid") == owner_uid and ref.get("controller")
                for ref in resource.get("metadata", {}).get("ownerReferences") or []
            )
        ]
        for orphan in orphans:
            api_version, kind, name, namespace = resource_identifiers(orphan)
            log.debug2("Garbage collecting %s/%s in %s", kind, name, namespace)
            self._delete(kind, name, namespace, api_version)

    def _notify(self, event_type: WatchEventType, resource: dict):
        for _, callback in list(self._watches):
            callback(WatchEvent(event_type, copy.deepcopy(resource)))


def _convert_dict_to_dot(dictionary, prefix=""):
    """Helper function to convert a dictionary to a map
    of strings dotted together. For example {a:{b:1},c:2}
    becomes {a.b:1,c:2}
    """
    if not isinstance(dictionary, dict):
        return {prefix: dictionary}

    output_dict = {}
    for key in dictionary:
        new_key = key if prefix == "" else f"{prefix}.{key}"
        output_dict = {**output_dict, **_convert_dict_to_dot(dictionary[key], new_key)}
    return output_dict
