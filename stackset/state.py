"""Runtime state of a stackset and its stacks, built from cluster resources."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from .model import (
    DEFAULT_SCALEDOWN_TTL,
    MAX_INT32,
    Deployment,
    HorizontalPodAutoscaler,
    Ingress,
    IntOrString,
    RouteGroup,
    RouteGroupSpec,
    Service,
    Stack,
    StackSet,
    StackSetIngressSpec,
    effective_replicas,
    find_backend_port,
    is_resource_up_to_date,
)
from .switcher import DEFAULT_BACKEND_WEIGHTS_ANNOTATION_KEY
from .weights import all_zero, normalize_weights


@dataclass
class StackResources:
    """The cluster resources currently belonging to a stack."""

    deployment: Deployment | None = None
    hpa: HorizontalPodAutoscaler | None = None
    service: Service | None = None
    ingress: Ingress | None = None
    route_group: RouteGroup | None = None


@dataclass(frozen=True)
class TrafficChange:
    """A change of a stack's actual traffic weight."""

    stack_name: str
    old_traffic_weight: float
    new_traffic_weight: float

    def __str__(self) -> str:
        return (
            f"{self.stack_name}: {self.old_traffic_weight:.1f}% "
            f"to {self.new_traffic_weight:.1f}%"
        )


def _now_like(reference: datetime) -> datetime:
    return datetime.now(reference.tzinfo)


@dataclass
class StackContainerState:
    """Full state of one stack: the stack itself plus what its resources report."""

    stack: Stack = field(default_factory=Stack)
    pending_removal: bool = False
    resources: StackResources = field(default_factory=StackResources)

    # Taken from the parent stackset.
    stackset_name: str = ""
    scaledown_ttl: timedelta = timedelta(0)
    cluster_domains: list[str] = field(default_factory=list)

    # Taken from the stack, falling back to the parent stackset.
    ingress_spec: StackSetIngressSpec | None = None
    route_group_spec: RouteGroupSpec | None = None
    backend_port: IntOrString | None = None

    stack_replicas: int = 0

    # Taken from the stack's resources.
    resources_updated: bool = False
    deployment_replicas: int = 0
    created_replicas: int = 0
    ready_replicas: int = 0
    updated_replicas: int = 0

    # Traffic and scaling.
    current_actual_traffic_weight: float = 0.0
    actual_traffic_weight: float = 0.0
    desired_traffic_weight: float = 0.0
    no_traffic_since: datetime | None = None
    prescaling_active: bool = False
    prescaling_replicas: int = 0
    prescaling_desired_traffic_weight: float = 0.0
    prescaling_last_traffic_increase: datetime | None = None
    min_ready_percent: float = 0.0

    @property
    def name(self) -> str:
        return self.stack.metadata.name

    @property
    def namespace(self) -> str:
        return self.stack.metadata.namespace

    def has_backend_port(self) -> bool:
        return self.backend_port is not None

    def has_traffic(self) -> bool:
        return self.actual_traffic_weight > 0 or self.desired_traffic_weight > 0

    def is_ready(self) -> bool:
        """Tell whether all resources are updated and enough replicas are ready."""
        min_required = math.ceil(self.deployment_replicas * self.min_ready_percent)
        return (
            self.resources_updated
            and self.deployment_replicas > 0
            and min_required <= self.updated_replicas
            and min_required <= self.ready_replicas
        )

    def max_replicas(self) -> int:
        autoscaler = self.stack.spec.stack_spec.autoscaler
        if autoscaler is not None:
            return autoscaler.max_replicas
        return MAX_INT32

    def is_autoscaled(self) -> bool:
        return self.stack.spec.stack_spec.autoscaler is not None

    def scaled_down(self, now: datetime | None = None) -> bool:
        """Tell whether the stack has had no traffic for longer than its TTL."""
        if self.has_traffic() or self.no_traffic_since is None:
            return False
        current = now if now is not None else _now_like(self.no_traffic_since)
        return current - self.no_traffic_since > self.scaledown_ttl

    def override_parent_resources(self) -> None:
        """Use the stack's own ingress and route group specs over the parent's."""
        spec = self.stack.spec
        override_port = spec.external_ingress is not None

        if spec.ingress is not None:
            override_port = True
            self.ingress_spec = spec.ingress

        if spec.route_group is not None:
            override_port = True
            self.route_group_spec = spec.route_group

        if override_port:
            self.backend_port = find_backend_port(
                self.ingress_spec, self.route_group_spec, spec.external_ingress
            )

    def update_from_resources(self) -> None:
        """Populate replica counts, readiness and prescaling state."""
        self.stack_replicas = effective_replicas(self.stack.spec.stack_spec.replicas)
        res = self.resources

        deployment_updated = False
        if res.deployment is not None:
            deployment = res.deployment
            self.deployment_replicas = effective_replicas(deployment.spec.replicas)
            self.created_replicas = deployment.status.replicas
            self.ready_replicas = deployment.status.ready_replicas
            self.updated_replicas = deployment.status.updated_replicas
            deployment_updated = (
                is_resource_up_to_date(self.stack, deployment.metadata)
                and deployment.status.observed_generation == deployment.metadata.generation
            )

        service_updated = res.service is not None and is_resource_up_to_date(
            self.stack, res.service.metadata
        )

        if self.ingress_spec is not None:
            ingress_updated = res.ingress is not None and is_resource_up_to_date(
                self.stack, res.ingress.metadata
            )
        else:
            ingress_updated = res.ingress is None

        if self.route_group_spec is not None:
            route_group_updated = res.route_group is not None and is_resource_up_to_date(
                self.stack, res.route_group.metadata
            )
        else:
            route_group_updated = res.route_group is None

        if self.is_autoscaled():
            hpa_updated = res.hpa is not None and is_resource_up_to_date(
                self.stack, res.hpa.metadata
            )
        else:
            hpa_updated = res.hpa is None

        self.resources_updated = (
            deployment_updated
            and service_updated
            and ingress_updated
            and route_group_updated
            and hpa_updated
        )

        status = self.stack.status
        self.no_traffic_since = status.no_traffic_since
        if status.prescaling.active:
            self.prescaling_active = True
            self.prescaling_replicas = status.prescaling.replicas
            self.prescaling_desired_traffic_weight = status.prescaling.desired_traffic_weight
            self.prescaling_last_traffic_increase = status.prescaling.last_traffic_increase


@dataclass
class StackSetState:
    """Snapshot of a stackset, its stacks and its current traffic distribution."""

    stack_set: StackSet = field(default_factory=StackSet)
    stack_containers: dict[str, StackContainerState] = field(default_factory=dict)
    ingress: Ingress | None = None
    route_group: RouteGroup | None = None
    traffic_reconciler: Any = None
    external_ingress_backend_port: IntOrString | None = None
    backend_weights_annotation_key: str = DEFAULT_BACKEND_WEIGHTS_ANNOTATION_KEY
    cluster_domains: list[str] = field(default_factory=list)

    def stack_by_name(self, name: str) -> StackContainerState | None:
        return next(
            (container for container in self.stack_containers.values() if container.name == name),
            None,
        )

    def _traffic_managed(self) -> bool:
        spec = self.stack_set.spec
        return (
            spec.ingress is not None
            or spec.route_group is not None
            or spec.external_ingress is not None
        )

    def _known_weights(self, pairs: list[tuple[str, float]]) -> dict[str, float]:
        names = {container.name for container in self.stack_containers.values()}
        weights = {name: weight for name, weight in pairs if name in names}
        if not all_zero(weights):
            normalize_weights(weights)
        return weights

    def _update_desired_traffic(self) -> None:
        weights = self._known_weights(
            [(entry.stack_name, entry.weight) for entry in self.stack_set.spec.traffic]
        )
        for container in self.stack_containers.values():
            container.desired_traffic_weight = weights.get(container.name, 0.0)

    def _update_actual_traffic(self) -> None:
        weights = self._known_weights(
            [(entry.service_name, entry.weight) for entry in self.stack_set.status.traffic]
        )
        for container in self.stack_containers.values():
            weight = weights.get(container.name, 0.0)
            container.actual_traffic_weight = weight
            container.current_actual_traffic_weight = weight

    def update_from_resources(self) -> None:
        """Populate every stack's state from its resources and the stackset."""
        if not self.stack_containers:
            return

        spec = self.stack_set.spec
        backend_port = find_backend_port(spec.ingress, spec.route_group, spec.external_ingress)
        if spec.external_ingress is not None:
            self.external_ingress_backend_port = backend_port

        ttl_seconds = spec.stack_lifecycle.scaledown_ttl_seconds
        scaledown_ttl = (
            DEFAULT_SCALEDOWN_TTL if ttl_seconds is None else timedelta(seconds=ttl_seconds)
        )

        for container in self.stack_containers.values():
            container.stackset_name = self.stack_set.metadata.name
            container.ingress_spec = spec.ingress
            container.backend_port = backend_port
            container.route_group_spec = spec.route_group
            container.scaledown_ttl = scaledown_ttl
            container.cluster_domains = self.cluster_domains
            container.override_parent_resources()
            container.update_from_resources()

        if self._traffic_managed():
            self._update_desired_traffic()
            self._update_actual_traffic()

    def traffic_changes(self) -> list[TrafficChange]:
        """List the stacks whose actual traffic weight changed, sorted by name."""
        changes = [
            TrafficChange(
                stack_name=container.name,
                old_traffic_weight=container.current_actual_traffic_weight,
                new_traffic_weight=container.actual_traffic_weight,
            )
            for container in self.stack_containers.values()
            if container.current_actual_traffic_weight != container.actual_traffic_weight
        ]
        return sorted(changes, key=lambda change: change.stack_name)