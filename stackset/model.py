"""Resource model for stacksets, stacks and the cluster objects generated from them."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

API_VERSION = "zalando.org/v1"
KIND_STACK = "Stack"
KIND_STACKSET = "StackSet"

STACK_GENERATION_ANNOTATION_KEY = "stackset-controller.zalando.org/stack-generation"

DEFAULT_VERSION = "default"
DEFAULT_STACK_LIFECYCLE_LIMIT = 10
DEFAULT_SCALEDOWN_TTL = timedelta(seconds=300)

PROTOCOL_TCP = "TCP"
SERVICE_TYPE_CLUSTER_IP = "ClusterIP"
PATH_TYPE_IMPLEMENTATION_SPECIFIC = "ImplementationSpecific"
SERVICE_BACKEND_TYPE = "service"
SHUNT_BACKEND_TYPE = "shunt"

MAX_INT32 = 2**31 - 1

_INTEGER = re.compile(r"[+-]?\d+")


@dataclass(frozen=True)
class IntOrString:
    """A value that is either an integer or a string, such as a port."""

    int_val: int = 0
    str_val: str = ""
    is_string: bool = False

    @classmethod
    def from_int(cls, value: int) -> IntOrString:
        return cls(int_val=value)

    @classmethod
    def from_str(cls, value: str) -> IntOrString:
        return cls(str_val=value, is_string=True)

    def int_value(self) -> int:
        """Return the integer value; a non-numeric string yields 0."""
        if self.is_string:
            if _INTEGER.fullmatch(self.str_val):
                return int(self.str_val)
            return 0
        return self.int_val

    def __str__(self) -> str:
        return self.str_val if self.is_string else str(self.int_val)


@dataclass
class OwnerReference:
    api_version: str = ""
    kind: str = ""
    name: str = ""
    uid: str = ""


@dataclass
class ObjectMeta:
    name: str = ""
    namespace: str = ""
    uid: str = ""
    generation: int = 0
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    owner_references: list[OwnerReference] = field(default_factory=list)
    creation_timestamp: datetime | None = None


@dataclass
class ContainerPort:
    container_port: int = 0
    name: str = ""
    protocol: str = ""


@dataclass
class Container:
    name: str = ""
    image: str = ""
    ports: list[ContainerPort] = field(default_factory=list)


@dataclass
class PodSpec:
    containers: list[Container] = field(default_factory=list)


@dataclass
class PodTemplateSpec:
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    spec: PodSpec = field(default_factory=PodSpec)


@dataclass
class ServicePort:
    name: str = ""
    protocol: str = ""
    port: int = 0
    target_port: IntOrString | None = None


@dataclass
class StackServiceSpec:
    annotations: dict[str, str] = field(default_factory=dict)
    ports: list[ServicePort] = field(default_factory=list)


@dataclass
class Autoscaler:
    min_replicas: int | None = None
    max_replicas: int = 0
    metrics: list[Any] = field(default_factory=list)
    behavior: Any = None


@dataclass
class DeploymentStrategy:
    type: str = ""
    max_unavailable: IntOrString | None = None
    max_surge: IntOrString | None = None


@dataclass
class StackSpec:
    replicas: int | None = None
    min_ready_seconds: int = 0
    service: StackServiceSpec | None = None
    pod_template: PodTemplateSpec = field(default_factory=PodTemplateSpec)
    autoscaler: Autoscaler | None = None
    strategy: DeploymentStrategy | None = None


@dataclass
class StackSetIngressSpec:
    annotations: dict[str, str] = field(default_factory=dict)
    hosts: list[str] = field(default_factory=list)
    backend_port: IntOrString = field(default_factory=IntOrString)
    path: str = ""


@dataclass
class StackSetExternalIngressSpec:
    backend_port: IntOrString = field(default_factory=IntOrString)


@dataclass
class RouteGroupBackend:
    name: str = ""
    type: str = ""
    service_name: str = ""
    service_port: int = 0
    algorithm: str = ""


@dataclass
class RouteGroupBackendReference:
    backend_name: str = ""
    weight: int = 0


@dataclass
class RouteGroupRoute:
    path_subtree: str = ""
    path: str = ""
    backends: list[RouteGroupBackendReference] = field(default_factory=list)


@dataclass
class RouteGroupSpec:
    annotations: dict[str, str] = field(default_factory=dict)
    hosts: list[str] = field(default_factory=list)
    additional_backends: list[RouteGroupBackend] = field(default_factory=list)
    routes: list[RouteGroupRoute] = field(default_factory=list)
    backend_port: int = 0
    lb_algorithm: str = ""


@dataclass
class StackSpecInternal:
    stack_spec: StackSpec = field(default_factory=StackSpec)
    ingress: StackSetIngressSpec | None = None
    external_ingress: StackSetExternalIngressSpec | None = None
    route_group: RouteGroupSpec | None = None


@dataclass
class PrescalingStatus:
    active: bool = False
    replicas: int = 0
    desired_traffic_weight: float = 0.0
    last_traffic_increase: datetime | None = None


@dataclass
class StackStatus:
    actual_traffic_weight: float = 0.0
    desired_traffic_weight: float = 0.0
    replicas: int = 0
    ready_replicas: int = 0
    updated_replicas: int = 0
    desired_replicas: int = 0
    prescaling: PrescalingStatus = field(default_factory=PrescalingStatus)
    no_traffic_since: datetime | None = None
    label_selector: str = ""


@dataclass
class Stack:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: StackSpecInternal = field(default_factory=StackSpecInternal)
    status: StackStatus = field(default_factory=StackStatus)


@dataclass
class DesiredTraffic:
    stack_name: str = ""
    weight: float = 0.0


@dataclass
class ActualTraffic:
    stack_name: str = ""
    service_name: str = ""
    service_port: IntOrString = field(default_factory=IntOrString)
    weight: float = 0.0


@dataclass
class StackLifecycle:
    scaledown_ttl_seconds: int | None = None
    limit: int | None = None


@dataclass
class StackTemplate:
    annotations: dict[str, str] = field(default_factory=dict)
    version: str = ""
    spec: StackSpec = field(default_factory=StackSpec)


@dataclass
class StackSetSpec:
    ingress: StackSetIngressSpec | None = None
    external_ingress: StackSetExternalIngressSpec | None = None
    route_group: RouteGroupSpec | None = None
    stack_lifecycle: StackLifecycle = field(default_factory=StackLifecycle)
    stack_template: StackTemplate = field(default_factory=StackTemplate)
    traffic: list[DesiredTraffic] = field(default_factory=list)
    min_ready_percent: int = 0


@dataclass
class StackSetStatus:
    stacks: int = 0
    ready_stacks: int = 0
    stacks_with_traffic: int = 0
    observed_stack_version: str = ""
    traffic: list[ActualTraffic] = field(default_factory=list)


@dataclass
class StackSet:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: StackSetSpec = field(default_factory=StackSetSpec)
    status: StackSetStatus = field(default_factory=StackSetStatus)
    api_version: str = ""
    kind: str = ""


@dataclass
class DeploymentSpec:
    replicas: int | None = None
    min_ready_seconds: int = 0
    selector: dict[str, str] = field(default_factory=dict)
    template: PodTemplateSpec = field(default_factory=PodTemplateSpec)
    strategy: DeploymentStrategy | None = None


@dataclass
class DeploymentStatus:
    replicas: int = 0
    ready_replicas: int = 0
    updated_replicas: int = 0
    observed_generation: int = 0


@dataclass
class Deployment:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: DeploymentSpec = field(default_factory=DeploymentSpec)
    status: DeploymentStatus = field(default_factory=DeploymentStatus)


@dataclass
class ServiceSpec:
    selector: dict[str, str] = field(default_factory=dict)
    type: str = SERVICE_TYPE_CLUSTER_IP
    ports: list[ServicePort] = field(default_factory=list)


@dataclass
class Service:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: ServiceSpec = field(default_factory=ServiceSpec)


@dataclass
class IngressPath:
    path: str = ""
    path_type: str = PATH_TYPE_IMPLEMENTATION_SPECIFIC
    service_name: str = ""
    service_port_name: str = ""
    service_port_number: int = 0


@dataclass
class IngressRule:
    host: str = ""
    paths: list[IngressPath] = field(default_factory=list)


@dataclass
class Ingress:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    rules: list[IngressRule] = field(default_factory=list)


@dataclass
class RouteGroupResourceSpec:
    hosts: list[str] = field(default_factory=list)
    backends: list[RouteGroupBackend] = field(default_factory=list)
    default_backends: list[RouteGroupBackendReference] = field(default_factory=list)
    routes: list[RouteGroupRoute] = field(default_factory=list)


@dataclass
class RouteGroup:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    spec: RouteGroupResourceSpec = field(default_factory=RouteGroupResourceSpec)


@dataclass
class HorizontalPodAutoscaler:
    metadata: ObjectMeta = field(default_factory=ObjectMeta)
    min_replicas: int | None = None
    max_replicas: int = 0
    metrics: list[Any] = field(default_factory=list)
    behavior: Any = None


def merge_labels(*args: dict[str, str] | None) -> dict[str, str]:
    """Merge label maps into a new one; later maps win on conflicting keys."""
    merged: dict[str, str] = {}
    for labels in args:
        if labels:
            merged.update(labels)
    return merged


def effective_replicas(replicas: int | None) -> int:
    """Return the replica count, defaulting to 1 when unset."""
    return 1 if replicas is None else replicas


def is_resource_up_to_date(stack: Stack, meta: ObjectMeta) -> bool:
    """Tell whether a resource was generated from the stack's current generation."""
    return meta.annotations.get(STACK_GENERATION_ANNOTATION_KEY) == str(
        stack.metadata.generation
    )


def find_backend_port(
    ingress: StackSetIngressSpec | None,
    route_group: RouteGroupSpec | None,
    external_ingress: StackSetExternalIngressSpec | None,
) -> IntOrString | None:
    """Find the backend port from the ingress, route group or external ingress."""
    port = ingress.backend_port if ingress is not None else None
    if route_group is not None:
        rg_port = IntOrString.from_int(route_group.backend_port)
        if port is not None and port.int_value() != rg_port.int_value():
            raise ValueError(
                f"backendPort for Ingress and RouteGroup does not match {port}!={rg_port}"
            )
        port = rg_port
    if port is None and external_ingress is not None:
        return external_ingress.backend_port
    return port


def label_selector_string(labels: dict[str, str]) -> str:
    """Render labels as a selector string, sorted by key."""
    return ",".join(f"{key}={labels[key]}" for key in sorted(labels))