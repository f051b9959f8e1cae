"""
The InstanceRegistry tracks every active instance and its phase for
observability. It owns the prometheus metrics describing the instances and is
injected into the controller rather than held as a global.
"""

# Standard
from typing import Dict, Optional
import threading

# Third Party
from prometheus_client import CollectorRegistry, Counter, Gauge

# First Party
import alog

# Local
from .status import Phase

log = alog.use_channel("RGSTY")


class InstanceRegistry:
    """Lock protected map of instance identity to phase"""

    def __init__(self, collector_registry: Optional[CollectorRegistry] = None):
        """
        Args:
            collector_registry:  Optional[CollectorRegistry]
                The prometheus registry the metrics are registered with. A
                private registry is used if not given.
        """
        self.collector_registry = collector_registry or CollectorRegistry()
        self._phases: Dict[str, Phase] = {}
        self._lock = threading.Lock()

        self.active_instances = Gauge(
            "cdplane_active_instances",
            "Number of active instances per phase",
            ["phase"],
            registry=self.collector_registry,
        )
        self.active_instances_total = Gauge(
            "cdplane_active_instances_total",
            "Total number of active instances",
            registry=self.collector_registry,
        )
        self.reconciliations = Counter(
            "cdplane_instance_reconciliations",
            "Number of reconciliation passes per instance",
            ["instance"],
            registry=self.collector_registry,
        )
        for phase in Phase:
            self.active_instances.labels(phase=phase.value).set(0)

    def set_phase(self, identity: str, phase: Phase):
        """Record the phase of an instance, adding it if needed"""
        with self._lock:
            previous = self._phases.get(identity)
            self._phases[identity] = phase
            self._refresh_gauges()
        if previous is not phase:
            log.debug2(
                "Instance %s phase %s -> %s",
                identity,
                previous.value if previous else None,
                phase.value,
            )

    def remove(self, identity: str) -> bool:
        """Forget an instance. Returns whether it was tracked."""
        with self._lock:
            removed = self._phases.pop(identity, None) is not None
            self._refresh_gauges()
        try:
            self.reconciliations.remove(identity)
        except KeyError:
            pass
        if removed:
            log.debug("Removed instance %s from registry", identity)
        return removed

    def get_phase(self, identity: str) -> Optional[Phase]:
        with self._lock:
            return self._phases.get(identity)

    def record_reconciliation(self, identity: str):
        self.reconciliations.labels(instance=identity).inc()

    def snapshot(self) -> Dict[str, Phase]:
        """Copy of the current identity to phase map"""
        with self._lock:
            return dict(self._phases)

    def count(self, phase: Optional[Phase] = None) -> int:
        with self._lock:
            if phase is None:
                return len(self._phases)
            return sum(1 for value in self._phases.values() if value is phase)

    ## Implementation Details ##################################################

    def _refresh_gauges(self):
        counts = {phase: 0 for phase in Phase}
        for phase in self._phases.values():
            counts[phase] += 1
        for phase, count in counts.items():
            self.active_instances.labels(phase=phase.value).set(count)
        self.active_instances_total.set(len(self._phases))
