"""
Diff policies for the objects that expose workloads (Service, Route, Ingress)
"""

# Local
from .base import DiffPolicy, register_policy


@register_policy("Service", "service")
class ServicePolicy(DiffPolicy):
    """Services are compared on type, selector and ports. The clusterIP and
    nodePort values are assigned by the cluster and never compared.
    """

    name = "service"

    def _diff_fields(self, existing, desired, patched, changes):
        self._compare(existing, desired, patched, "spec.type", "service type", changes)
        self._compare(
            existing, desired, patched, "spec.selector", "service selector", changes
        )
        existing_ports = existing.get("spec", {}).get("ports") or []
        desired_ports = desired.get("spec", {}).get("ports") or []
        assigned = {
            port.get("name"): port.get("nodePort")
            for port in existing_ports
            if port.get("nodePort")
        }
        comparable = [
            {key: val for key, val in port.items() if key != "nodePort"}
            for port in existing_ports
        ]
        if comparable != desired_ports:
            ports = []
            for port in desired_ports:
                port = dict(port)
                if port.get("name") in assigned and "nodePort" not in port:
                    port["nodePort"] = assigned[port["name"]]
                ports.append(port)
            patched.setdefault("spec", {})["ports"] = ports
            changes.append("service ports")


@register_policy("Route", "route")
class RoutePolicy(DiffPolicy):
    """Routes are compared on host, target, port and TLS settings. A Route
    without a desired host keeps the host the router assigned to it.
    """

    name = "route"

    def _diff_fields(self, existing, desired, patched, changes):
        for path, explanation, server_defaulted in [
            ("spec.host", "route host", True),
            ("spec.to", "route target", False),
            ("spec.port", "route port", False),
            ("spec.tls", "route tls", False),
            ("spec.wildcardPolicy", "route wildcard policy", True),
        ]:
            self._compare(
                existing,
                desired,
                patched,
                path,
                explanation,
                changes,
                server_defaulted=server_defaulted,
            )


@register_policy("Ingress", "ingress")
class IngressPolicy(DiffPolicy):
    """Ingresses are compared on class, rules (including host) and TLS"""

    name = "ingress"

    def _diff_fields(self, existing, desired, patched, changes):
        for path, explanation in [
            ("spec.ingressClassName", "ingress class"),
            ("spec.rules", "ingress rules"),
            ("spec.tls", "ingress tls"),
        ]:
            self._compare(existing, desired, patched, path, explanation, changes)
