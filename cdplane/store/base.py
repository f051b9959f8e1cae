"""
This defines the base class for all ObjectStore types and the shared watch
event types.
"""

# Standard
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterator, List, Optional, Tuple
import abc


class WatchEventType(Enum):
    """Enum for all possible kubernetes event types"""

    DELETED = "DELETED"
    MODIFIED = "MODIFIED"
    ADDED = "ADDED"


@dataclass
class WatchEvent:
    """DataClass containing the type, resource, and timestamp of a
    particular event"""

    type: WatchEventType
    resource: dict
    timestamp: datetime = field(default_factory=datetime.now)


class ObjectStoreBase(abc.ABC):
    """
    Base class for object stores which carry out all reads and writes against
    the cluster. Reads report failure through a success flag and report a
    missing object as (True, None). Writes raise WriteError, or
    WriteConflictError when the object changed since it was read.
    """

    @abc.abstractmethod
    def get_object_current_state(
        self,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
    ) -> Tuple[bool, Optional[dict]]:
        """Fetch the current state of a given object by name

        Args:
            kind:  str
                The kind of the object to fetch
            name:  str
                The full name of the object to fetch
            namespace:  Optional[str]
                The namespace to search for the object or None for cluster
                scoped objects
            api_version:  Optional[str]
                The api_version of the resource kind to fetch

        Returns:
            success:  bool
                Whether or not the state fetch operation succeeded
            current_state:  Optional[dict]
                The dict representation of the current object's configuration,
                or None if not present
        """

    @abc.abstractmethod
    def filter_objects_current_state(
        self,
        kind: str,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
        label_selector: Optional[str] = None,
        field_selector: Optional[str] = None,
    ) -> Tuple[bool, List[dict]]:
        """Fetch a list of objects that match the label and field selectors

        Returns:
            success:  bool
                Whether or not the state fetch operation succeeded
            current_state:  List[dict]
                The matching objects, or an empty list if none match
        """

    @abc.abstractmethod
    def create_object(self, resource: dict) -> dict:
        """Create a new object

        Returns:
            created:  dict
                The object as stored

        Raises:
            WriteConflictError if the object already exists
            WriteError on any other failure
        """

    @abc.abstractmethod
    def update_object(self, resource: dict) -> dict:
        """Replace an existing object. When the resource carries a
        resourceVersion the update only succeeds if it is still current.

        Returns:
            updated:  dict
                The object as stored

        Raises:
            WriteConflictError if the resourceVersion is stale
            WriteError on any other failure
        """

    @abc.abstractmethod
    def delete_object(
        self,
        kind: str,
        name: str,
        namespace: Optional[str] = None,
        api_version: Optional[str] = None,
    ) -> bool:
        """Delete an object. An absent object is not an error.

        Returns:
            deleted:  bool
                True if a delete was issued, False if the object was absent

        Raises:
            WriteError if the delete fails
        """

    @abc.abstractmethod
    def set_status(
        self,
        kind: str,
        name: str,
        namespace: Optional[str],
        status: dict,
        api_version: Optional[str] = None,
    ) -> Tuple[bool, bool]:
        """Set the status of an object. Status writes are last-write-wins.

        Returns:
            success:  bool
                Whether or not the status update operation succeeded
            changed:  bool
                Whether or not the status update resulted in a change
        """

    @abc.abstractmethod
    def watch_objects(
        self,
        kind: str,
        api_version: Optional[str] = None,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> Iterator[WatchEvent]:
        """Watch objects of a kind and yield change events"""

    def has_kind(self, kind: str, api_version: Optional[str] = None) -> bool:
        """Whether the store serves the given kind. Stores that cannot tell
        report every kind as served.
        """
        return True


def resource_identifiers(resource: dict) -> Tuple[str, str, str, Optional[str]]:
    """Get the (api_version, kind, name, namespace) of a resource"""
    metadata = resource.get("metadata", {})
    api_version = resource.get("apiVersion")
    kind = resource.get("kind")
    name = metadata.get("name")
    assert None not in [kind, name], "Cannot write resource without kind or name"
    return api_version, kind, name, metadata.get("namespace")
