"""
The ChildResourceDescriptor describes one child object the engine manages for
an instance. Descriptors are recomputed on every pass.
"""

# Standard
from dataclasses import dataclass, field
from typing import Optional

# Local
from .instance import Component


@dataclass
class ChildResourceDescriptor:
    """Desired state of one child object

    kind:  The object kind
    api_version:  The object apiVersion
    name:  The object name
    namespace:  The object namespace or None when cluster scoped
    desired:  The full desired object
    diff_policy:  Identifier of the diff policy used on update (defaults to
        the kind)
    component:  The component the object belongs to
    enabled:  Whether the object should exist
    disable_reason:  Human-readable reason the object should not exist
    owned:  Whether the instance may hold a controller reference on the object
        (cross-namespace objects are never owned)
    """

    kind: str
    api_version: str
    name: str
    namespace: Optional[str]
    desired: dict = field(default_factory=dict, repr=False)
    diff_policy: Optional[str] = None
    component: Optional[Component] = None
    enabled: bool = True
    disable_reason: str = ""
    owned: bool = True

    def __post_init__(self):
        if self.diff_policy is None:
            self.diff_policy = self.kind
        metadata = self.desired.setdefault("metadata", {})
        self.desired.setdefault("kind", self.kind)
        self.desired.setdefault("apiVersion", self.api_version)
        metadata["name"] = self.name
        if self.namespace is not None:
            metadata["namespace"] = self.namespace
        else:
            metadata.pop("namespace", None)

    @property
    def cluster_scoped(self) -> bool:
        return self.namespace is None

    def describe(self) -> str:
        """Short human-readable identifier for logs and errors"""
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"
