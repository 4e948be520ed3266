"""Stackset-level decisions: new stacks, garbage collection and shared resources."""

from __future__ import annotations

import copy
import json
from datetime import datetime

from .model import (
    DEFAULT_STACK_LIFECYCLE_LIMIT,
    DEFAULT_VERSION,
    PROTOCOL_TCP,
    SERVICE_BACKEND_TYPE,
    ActualTraffic,
    DesiredTraffic,
    Ingress,
    IngressPath,
    IngressRule,
    ObjectMeta,
    OwnerReference,
    RouteGroup,
    RouteGroupBackend,
    RouteGroupBackendReference,
    RouteGroupResourceSpec,
    Stack,
    StackServiceSpec,
    StackSet,
    StackSetStatus,
    StackSpecInternal,
    merge_labels,
)
from .stack_resources import (
    STACK_VERSION_LABEL_KEY,
    STACKSET_HERITAGE_LABEL_KEY,
    StackContainer,
)
from .switcher import DEFAULT_BACKEND_WEIGHTS_ANNOTATION_KEY
from .traffic import StackSetTraffic

INGRESS_TRAFFIC_AUTHORITATIVE_ANNOTATION = "zalando.org/traffic-authoritative"


def current_stack_version(stackset: StackSet) -> str:
    """Return the version of the stackset's template, or the default version."""
    return stackset.spec.stack_template.version or DEFAULT_VERSION


def generate_stack_name(stackset: StackSet, version: str) -> str:
    """Return the name of the stack for the given version."""
    return f"{stackset.metadata.name}-{version}"


def sanitize_service_ports(service: StackServiceSpec) -> StackServiceSpec:
    """Give every service port without a protocol the default protocol."""
    for port in service.ports:
        if not port.protocol:
            port.protocol = PROTOCOL_TCP
    return service


def _dump_weights(weights: dict[str, float]) -> str:
    compact = {
        name: int(value) if float(value).is_integer() else value
        for name, value in weights.items()
    }
    return json.dumps(compact, sort_keys=True, separators=(",", ":"))


def _last_used_key(container: StackContainer) -> tuple:
    # Stacks without a no-traffic time fall back to their creation time; unset
    # times sort first.
    moment: datetime | None = (
        container.no_traffic_since or container.stack.metadata.creation_timestamp
    )
    return (0,) if moment is None else (1, moment)


class StackSetContainer(StackSetTraffic):
    """Full state of a stackset and its stacks, with the resources generated from it."""

    def _owner_reference(self) -> OwnerReference:
        stackset = self.stack_set
        return OwnerReference(
            api_version=stackset.api_version,
            kind=stackset.kind,
            name=stackset.metadata.name,
            uid=stackset.metadata.uid,
        )

    def _heritage_labels(self) -> dict[str, str]:
        stackset = self.stack_set
        return merge_labels(
            {STACKSET_HERITAGE_LABEL_KEY: stackset.metadata.name}, stackset.metadata.labels
        )

    def new_stack(self) -> tuple[StackContainer | None, str]:
        """Return the stack that should be created and its version, or (None, "")."""
        stackset = self.stack_set
        observed_version = stackset.status.observed_stack_version
        version = current_stack_version(stackset)
        name = generate_stack_name(stackset, version)

        # Never recreate a stack that existed before and was removed.
        if self.stack_by_name(name) is not None or observed_version == version:
            return None, ""

        parent_spec = copy.deepcopy(stackset.spec.stack_template.spec)
        if parent_spec.service is not None:
            parent_spec.service = sanitize_service_ports(parent_spec.service)

        spec = StackSpecInternal(
            stack_spec=parent_spec,
            ingress=copy.deepcopy(stackset.spec.ingress),
            external_ingress=copy.deepcopy(stackset.spec.external_ingress),
            route_group=copy.deepcopy(stackset.spec.route_group),
        )
        metadata = ObjectMeta(
            name=name,
            namespace=stackset.metadata.namespace,
            owner_references=[self._owner_reference()],
            labels=merge_labels(
                {STACKSET_HERITAGE_LABEL_KEY: stackset.metadata.name},
                stackset.metadata.labels,
                {STACK_VERSION_LABEL_KEY: version},
            ),
            annotations=dict(stackset.spec.stack_template.annotations),
        )
        return StackContainer(stack=Stack(metadata=metadata, spec=spec)), version

    def mark_expired_stacks(self) -> None:
        """Mark the stacks beyond the history limit for removal, oldest first."""
        spec = self.stack_set.spec
        limit = spec.stack_lifecycle.limit
        history_limit = DEFAULT_STACK_LIFECYCLE_LIMIT if limit is None else limit

        candidates = [
            container
            for container in self.stack_containers.values()
            if not (
                container.route_group_spec is not None
                or container.ingress_spec is not None
                or spec.external_ingress is not None
            )
            or container.scaled_down()
        ]
        if len(candidates) <= history_limit:
            return

        candidates.sort(key=_last_used_key)
        for container in candidates[: len(candidates) - history_limit]:
            container.pending_removal = True

    def generate_route_group(self) -> RouteGroup | None:
        """Build the stackset's route group, or None if it has no route group spec."""
        stackset = self.stack_set
        rg_spec = stackset.spec.route_group
        if rg_spec is None:
            return None

        backends: list[RouteGroupBackend] = []
        default_backends: list[RouteGroupBackendReference] = []
        stack_names: set[str] = set()
        for container in self.stack_containers.values():
            stack_names.add(container.name)
            backends.append(
                RouteGroupBackend(
                    name=container.name,
                    type=SERVICE_BACKEND_TYPE,
                    service_name=container.name,
                    service_port=rg_spec.backend_port,
                    algorithm=rg_spec.lb_algorithm,
                )
            )
            if container.actual_traffic_weight > 0:
                default_backends.append(
                    RouteGroupBackendReference(
                        backend_name=container.name,
                        weight=int(container.actual_traffic_weight),
                    )
                )

        for backend in rg_spec.additional_backends:
            if backend.name in stack_names or backend.service_name in stack_names:
                raise ValueError("additionalBackends must not reference a Stack Service")
            backends.append(backend)

        backends.sort(key=lambda backend: backend.name)
        default_backends.sort(key=lambda reference: reference.backend_name)

        return RouteGroup(
            metadata=ObjectMeta(
                name=stackset.metadata.name,
                namespace=stackset.metadata.namespace,
                labels=self._heritage_labels(),
                annotations=dict(rg_spec.annotations),
                owner_references=[self._owner_reference()],
            ),
            spec=RouteGroupResourceSpec(
                hosts=list(rg_spec.hosts),
                backends=backends,
                default_backends=default_backends,
                routes=list(rg_spec.routes),
            ),
        )

    def generate_ingress(self) -> Ingress | None:
        """Build the stackset's ingress, or None if it has no ingress spec."""
        stackset = self.stack_set
        ingress_spec = stackset.spec.ingress
        if ingress_spec is None:
            return None

        port = ingress_spec.backend_port
        actual_weights: dict[str, float] = {}
        paths: list[IngressPath] = []
        for container in self.stack_containers.values():
            if container.actual_traffic_weight > 0:
                actual_weights[container.name] = container.actual_traffic_weight
                paths.append(
                    IngressPath(
                        path=ingress_spec.path,
                        service_name=container.name,
                        service_port_name=port.str_val,
                        service_port_number=port.int_val,
                    )
                )
        if not paths:
            raise ValueError("invalid ingress, no paths defined")
        paths.sort(key=lambda path: path.service_name)

        rules = [
            IngressRule(host=host, paths=[copy.copy(path) for path in paths])
            for host in ingress_spec.hosts
        ]
        rules.sort(key=lambda rule: rule.host)

        annotations = merge_labels(
            ingress_spec.annotations, {INGRESS_TRAFFIC_AUTHORITATIVE_ANNOTATION: "false"}
        )
        annotations[self.backend_weights_annotation_key] = _dump_weights(actual_weights)

        return Ingress(
            metadata=ObjectMeta(
                name=stackset.metadata.name,
                namespace=stackset.metadata.namespace,
                labels=self._heritage_labels(),
                annotations=annotations,
                owner_references=[self._owner_reference()],
            ),
            rules=rules,
        )

    def _active_containers(self) -> list[StackContainer]:
        return [c for c in self.stack_containers.values() if not c.pending_removal]

    def generate_stack_set_status(self) -> StackSetStatus:
        """Build the status reported on the stackset."""
        status = StackSetStatus(
            observed_stack_version=self.stack_set.status.observed_stack_version
        )
        traffic: list[ActualTraffic] = []
        for container in self._active_containers():
            if container.has_backend_port():
                traffic.append(
                    ActualTraffic(
                        stack_name=container.name,
                        service_name=container.name,
                        service_port=container.backend_port,
                        weight=container.actual_traffic_weight,
                    )
                )
            status.stacks += 1
            if container.has_traffic():
                status.stacks_with_traffic += 1
            if container.is_ready():
                status.ready_stacks += 1
        status.traffic = sorted(traffic, key=lambda entry: entry.stack_name)
        return status

    def generate_stack_set_traffic(self) -> list[DesiredTraffic]:
        """Return the desired traffic of the stacks that should receive traffic."""
        traffic = [
            DesiredTraffic(stack_name=container.name, weight=container.desired_traffic_weight)
            for container in self._active_containers()
            if container.has_backend_port() and container.desired_traffic_weight > 0
        ]
        return sorted(traffic, key=lambda entry: entry.stack_name)


def new_container(
    stackset: StackSet,
    reconciler,
    backend_weights_annotation_key: str = DEFAULT_BACKEND_WEIGHTS_ANNOTATION_KEY,
    cluster_domains: list[str] | None = None,
) -> StackSetContainer:
    """Create an empty container for a stackset."""
    return StackSetContainer(
        stack_set=stackset,
        stack_containers={},
        traffic_reconciler=reconciler,
        backend_weights_annotation_key=backend_weights_annotation_key,
        cluster_domains=list(cluster_domains or []),
    )