"""
Diff policy for pod-template workloads (Deployment, StatefulSet)
"""

# Standard
from datetime import datetime, timezone
from typing import List
import copy

# First Party
import alog

# Local
from .. import constants
from .base import DiffPolicy, register_policy, values_differ

log = alog.use_channel("DIFF")

# Managed fields on each container, compared positionally
_CONTAINER_FIELDS = [
    ("image", "image"),
    ("imagePullPolicy", "image pull policy"),
    ("command", "command"),
    ("args", "args"),
    ("env", "env"),
    ("envFrom", "env from"),
    ("resources", "resources"),
    ("securityContext", "security context"),
    ("volumeMounts", "volume mounts"),
]

# Managed fields on the pod spec
_POD_FIELDS = [
    ("nodeSelector", "node selector"),
    ("tolerations", "tolerations"),
    ("serviceAccountName", "service account"),
    ("securityContext", "pod security context"),
    ("volumes", "volumes"),
]


@register_policy("Deployment", "StatefulSet", "workload")
class WorkloadPolicy(DiffPolicy):
    """Compare replicas, pod template metadata, placement and every managed
    container field. An image change also stamps the image-upgraded label on
    the pod template.
    """

    name = "workload"

    def _diff_fields(self, existing, desired, patched, changes):
        if "replicas" in desired.get("spec", {}):
            self._compare(
                existing, desired, patched, "spec.replicas", "replicas", changes
            )

        existing_tmpl = existing.get("spec", {}).get("template", {})
        desired_tmpl = desired.get("spec", {}).get("template", {})
        patched_tmpl = patched.setdefault("spec", {}).setdefault("template", {})

        self._diff_template_metadata(existing_tmpl, desired_tmpl, patched_tmpl, changes)

        existing_pod = existing_tmpl.get("spec", {})
        desired_pod = desired_tmpl.get("spec", {})
        patched_pod = patched_tmpl.setdefault("spec", {})
        for key, explanation in _POD_FIELDS:
            self._compare(
                existing_pod, desired_pod, patched_pod, key, explanation, changes
            )

        image_changed = False
        for key, prefix in [
            ("initContainers", "init container"),
            ("containers", "container"),
        ]:
            image_changed = (
                self._diff_containers(
                    existing_pod.get(key) or [],
                    desired_pod.get(key) or [],
                    patched_pod,
                    key,
                    prefix,
                    changes,
                )
                or image_changed
            )

        if image_changed:
            patched_tmpl.setdefault("metadata", {}).setdefault("labels", {})[
                constants.IMAGE_UPGRADED_LABEL
            ] = datetime.now(timezone.utc).strftime("%Y-%m-%d.%H-%M-%S")

    @staticmethod
    def _diff_template_metadata(existing_tmpl, desired_tmpl, patched_tmpl, changes):
        """Template labels and annotations are compared only for the keys the
        operator sets since other controllers add their own
        """
        for key, explanation in [
            ("labels", "pod template labels"),
            ("annotations", "pod template annotations"),
        ]:
            desired_vals = desired_tmpl.get("metadata", {}).get(key) or {}
            existing_vals = existing_tmpl.get("metadata", {}).get(key) or {}
            differing = {
                name: val
                for name, val in desired_vals.items()
                if existing_vals.get(name) != val
            }
            if differing:
                if constants.TLS_CHECKSUM_ANNOTATION in differing:
                    explanation = "tls checksum"
                patched_tmpl.setdefault("metadata", {}).setdefault(key, {}).update(
                    differing
                )
                changes.append(explanation)

    @staticmethod
    def _diff_containers(
        existing: List[dict],
        desired: List[dict],
        patched_pod: dict,
        key: str,
        prefix: str,
        changes: List[str],
    ) -> bool:
        """Compare containers by index

        Returns:
            image_changed:  bool
                True if any container image changed
        """
        if len(existing) != len(desired):
            log.debug2(
                "Container count for %s changed %d -> %d",
                key,
                len(existing),
                len(desired),
            )
            patched_pod[key] = copy.deepcopy(desired)
            changes.append(f"{key} count")
            return any(
                existing[i].get("image") != desired[i].get("image")
                for i in range(min(len(existing), len(desired)))
            ) or len(desired) > len(existing)

        image_changed = False
        patched_containers = patched_pod.setdefault(key, copy.deepcopy(existing))
        for i, (live, want) in enumerate(zip(existing, desired)):
            if live.get("name") != want.get("name"):
                patched_containers[i] = copy.deepcopy(want)
                changes.append(f"{prefix}[{i}] name")
                image_changed = image_changed or live.get("image") != want.get("image")
                continue
            for field_name, explanation in _CONTAINER_FIELDS:
                if values_differ(live.get(field_name), want.get(field_name)):
                    if want.get(field_name) is None:
                        patched_containers[i].pop(field_name, None)
                    else:
                        patched_containers[i][field_name] = copy.deepcopy(
                            want[field_name]
                        )
                    changes.append(f"{prefix}[{i}] {explanation}")
                    if field_name == "image":
                        image_changed = True
        return image_changed
