"""
The OwnershipRegistrar names child objects and assigns their ownership. Every
owned child carries exactly one controller owner reference pointing at its
instance. Children the instance cannot own (cluster scoped objects and objects
outside the instance's namespace) carry no controller reference and are found
again through the instance label when the instance is deleted.
"""

# Standard
from dataclasses import dataclass
from typing import Dict, List, Optional
import copy

# First Party
import alog

# Local
from . import constants
from .descriptor import ChildResourceDescriptor
from .instance import ManagedInstance
from .utils import get_truncated_name

log = alog.use_channel("OWNRF")


@dataclass
class OwnershipRecord:
    """The ownership assigned to one child object

    instance_identity:  The identity of the owning instance
    name:  The generated collision-free name
    owner_reference:  The controller owner reference, or None for objects that
        must be removed explicitly
    """

    instance_identity: str
    name: str
    owner_reference: Optional[dict] = None

    @property
    def requires_explicit_cleanup(self) -> bool:
        return self.owner_reference is None


class OwnershipRegistrar:
    """Deterministic naming and ownership stamping for child objects"""

    ## Naming ##################################################################

    @staticmethod
    def resource_name(
        instance: ManagedInstance,
        component: str,
        cluster_scoped: bool = False,
    ) -> str:
        """Generate the name of a child object. Cluster scoped names include the
        target namespace so instances sharing a name in different namespaces
        never collide.

        Args:
            instance:  ManagedInstance
                The owning instance
            component:  str
                The component or object role name
            cluster_scoped:  bool
                Whether the child is cluster scoped

        Returns:
            name:  str
                The name, truncated with a hash suffix to the name limit
        """
        if cluster_scoped:
            name = f"{instance.name}-{instance.target_namespace}-{component}"
        else:
            name = f"{instance.name}-{component}"
        return get_truncated_name(name)

    @staticmethod
    def instance_labels(instance: ManagedInstance) -> Dict[str, str]:
        """The labels identifying every child of an instance"""
        return {
            constants.MANAGED_BY_LABEL: constants.OPERATOR_NAME,
            constants.PART_OF_LABEL: constants.OPERATOR_NAME,
            constants.INSTANCE_LABEL: instance.identity,
        }

    def instance_selector(self, instance: ManagedInstance) -> str:
        """Label selector matching every child of an instance"""
        return ",".join(
            f"{key}={val}"
            for key, val in sorted(self.instance_labels(instance).items())
        )

    ## Ownership ###############################################################

    def register(
        self,
        instance: ManagedInstance,
        descriptor: ChildResourceDescriptor,
        existing: Optional[dict] = None,
    ) -> OwnershipRecord:
        """Stamp labels and ownership onto the descriptor's desired object

        Args:
            instance:  ManagedInstance
                The owning instance
            descriptor:  ChildResourceDescriptor
                The descriptor whose desired object is updated in place
            existing:  Optional[dict]
                The live object, used to keep owner references that belong to
                other controllers' non-controlling owners

        Returns:
            record:  OwnershipRecord
                The ownership assigned to the child
        """
        metadata = descriptor.desired.setdefault("metadata", {})
        metadata.setdefault("labels", {}).update(self.instance_labels(instance))
        if descriptor.component is not None:
            metadata["labels"].setdefault(
                constants.COMPONENT_LABEL, descriptor.component.value
            )
        metadata["labels"].setdefault(constants.NAME_LABEL, descriptor.name)

        owner_ref = None
        if descriptor.owned and instance.can_own(descriptor.namespace):
            owner_ref = instance.owner_reference()

        existing_metadata = (existing or {}).get("metadata", {})
        existing_refs = existing_metadata.get("ownerReferences") or []
        metadata["ownerReferences"] = self._merge_owner_references(
            existing_refs, owner_ref
        )
        if not metadata["ownerReferences"]:
            del metadata["ownerReferences"]
            log.debug3(
                "No owner reference for %s; explicit cleanup required",
                descriptor.describe(),
            )

        return OwnershipRecord(
            instance_identity=instance.identity,
            name=descriptor.name,
            owner_reference=owner_ref,
        )

    @staticmethod
    def _merge_owner_references(
        existing_refs: List[dict], owner_ref: Optional[dict]
    ) -> List[dict]:
        """Keep every non-controller reference and make owner_ref the single
        controller reference
        """
        merged = [
            copy.deepcopy(ref)
            for ref in existing_refs
            if not ref.get("controller")
            and (owner_ref is None or ref.get("uid") != owner_ref.get("uid"))
        ]
        if owner_ref is not None:
            merged.append(owner_ref)
        else:
            # An instance that cannot own the object leaves any existing
            # controller reference in place
            merged.extend(
                copy.deepcopy(ref) for ref in existing_refs if ref.get("controller")
            )
        return merged
