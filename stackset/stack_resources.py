"""Generation of the cluster resources that belong to a single stack."""

from __future__ import annotations

import copy
import dataclasses
import logging
from typing import TypeVar

from .model import (
    API_VERSION,
    KIND_STACK,
    PROTOCOL_TCP,
    SERVICE_BACKEND_TYPE,
    SERVICE_TYPE_CLUSTER_IP,
    STACK_GENERATION_ANNOTATION_KEY,
    Container,
    Deployment,
    DeploymentSpec,
    Ingress,
    IngressPath,
    IngressRule,
    IntOrString,
    ObjectMeta,
    OwnerReference,
    PodTemplateSpec,
    PrescalingStatus,
    RouteGroup,
    RouteGroupBackend,
    RouteGroupBackendReference,
    RouteGroupResourceSpec,
    Service,
    ServicePort,
    ServiceSpec,
    StackSpecInternal,
    StackStatus,
    label_selector_string,
    merge_labels,
)
from .state import StackContainerState

log = logging.getLogger(__name__)

STACKSET_HERITAGE_LABEL_KEY = "stackset"
STACK_VERSION_LABEL_KEY = "stack-version"

SELECTOR_LABELS = frozenset({STACKSET_HERITAGE_LABEL_KEY, STACK_VERSION_LABEL_KEY})

_WithLabels = TypeVar("_WithLabels")


def limit_labels(labels: dict[str, str], valid_keys) -> dict[str, str]:
    """Return only the labels whose keys are in ``valid_keys``."""
    return {key: value for key, value in labels.items() if key in valid_keys}


def object_meta_inject_labels(object_meta: _WithLabels, labels: dict[str, str]) -> _WithLabels:
    """Return a copy of the metadata with ``labels`` added where not already set."""
    merged = dict(object_meta.labels or {})
    for key, value in labels.items():
        merged.setdefault(key, value)
    return dataclasses.replace(object_meta, labels=merged)


def service_ports_from_containers(containers: list[Container]) -> list[ServicePort]:
    """Derive service ports from the ports the containers expose."""
    ports = []
    for i, container in enumerate(containers):
        for j, port in enumerate(container.ports):
            ports.append(
                ServicePort(
                    name=port.name or f"port-{i}-{j}",
                    protocol=port.protocol or PROTOCOL_TCP,
                    port=port.container_port,
                    target_port=IntOrString.from_int(port.container_port),
                )
            )
    return ports


def _port_matches(port: ServicePort, backend_port: IntOrString) -> bool:
    if backend_port.is_string:
        return port.name == backend_port.str_val
    return port.port == backend_port.int_val


def get_service_ports(
    stack_spec: StackSpecInternal, backend_port: IntOrString | None
) -> list[ServicePort]:
    """Return the service ports of a stack, checking one matches the backend port."""
    service = stack_spec.stack_spec.service
    if service is None or not service.ports:
        ports = service_ports_from_containers(stack_spec.stack_spec.pod_template.spec.containers)
    else:
        ports = service.ports

    if backend_port is not None and not any(_port_matches(p, backend_port) for p in ports):
        raise ValueError(f"no service ports matching backendPort '{backend_port}'")
    return ports


class StackContainer(StackContainerState):
    """A stack's state together with the resources generated from it."""

    def _resource_meta(self) -> ObjectMeta:
        return ObjectMeta(
            name=self.name,
            namespace=self.namespace,
            annotations={STACK_GENERATION_ANNOTATION_KEY: str(self.stack.metadata.generation)},
            labels=dict(self.stack.metadata.labels),
            owner_references=[
                OwnerReference(
                    api_version=API_VERSION,
                    kind=KIND_STACK,
                    name=self.name,
                    uid=self.stack.metadata.uid,
                )
            ],
        )

    def selector(self) -> dict[str, str]:
        """Labels that select the stack's pods."""
        return limit_labels(self.stack.metadata.labels, SELECTOR_LABELS)

    def _desired_deployment_replicas(self) -> int:
        desired = self.prescaling_replicas if self.prescaling_active else self.stack_replicas
        if desired != 0 and not self.scaled_down():
            if self.deployment_replicas == 0 or (
                not self.is_autoscaled() and desired != self.deployment_replicas
            ):
                return desired
        elif self.deployment_replicas != 0:
            return 0
        return self.deployment_replicas

    def generate_deployment(self) -> Deployment:
        """Build the deployment that runs the stack's pods."""
        stack_spec = self.stack.spec.stack_spec
        template = stack_spec.pod_template
        template_meta = ObjectMeta(
            annotations=dict(template.annotations), labels=dict(template.labels)
        )
        template_meta = object_meta_inject_labels(template_meta, self.stack.metadata.labels)

        return Deployment(
            metadata=self._resource_meta(),
            spec=DeploymentSpec(
                replicas=self._desired_deployment_replicas(),
                min_ready_seconds=stack_spec.min_ready_seconds,
                selector=self.selector(),
                template=PodTemplateSpec(
                    labels=template_meta.labels,
                    annotations=template_meta.annotations,
                    spec=copy.deepcopy(template.spec),
                ),
                strategy=copy.deepcopy(stack_spec.strategy),
            ),
        )

    def generate_service(self) -> Service:
        """Build the service in front of the stack's pods."""
        backend_port = self.backend_port if self.has_backend_port() else None
        ports = get_service_ports(self.stack.spec, backend_port)

        meta = self._resource_meta()
        service_spec = self.stack.spec.stack_spec.service
        if service_spec is not None:
            meta.annotations = merge_labels(meta.annotations, service_spec.annotations)

        return Service(
            metadata=meta,
            spec=ServiceSpec(selector=self.selector(), type=SERVICE_TYPE_CLUSTER_IP, ports=ports),
        )

    def _stack_hostnames(self, hosts: list[str]) -> list[str]:
        result = set()
        for host in hosts:
            for domain in self.cluster_domains:
                if host.endswith(domain):
                    result.add(f"{self.name}.{domain}")
                else:
                    log.debug("Ingress host: %s suffix did not match cluster-domain %s", host, domain)
        return sorted(result)

    def generate_ingress(self) -> Ingress | None:
        """Build the per-stack ingress, or None if the stack needs none."""
        if not self.has_backend_port() or self.ingress_spec is None:
            return None
        hostnames = self._stack_hostnames(self.ingress_spec.hosts)
        if not hostnames:
            return None

        port = self.backend_port
        rules = [
            IngressRule(
                host=hostname,
                paths=[
                    IngressPath(
                        path=self.ingress_spec.path,
                        service_name=self.name,
                        service_port_name=port.str_val,
                        service_port_number=port.int_val,
                    )
                ],
            )
            for hostname in hostnames
        ]
        rules.sort(key=lambda rule: rule.host)

        meta = self._resource_meta()
        meta.annotations = merge_labels(meta.annotations, self.ingress_spec.annotations)
        return Ingress(metadata=meta, rules=rules)

    def generate_route_group(self) -> RouteGroup | None:
        """Build the per-stack route group, or None if the stack needs none."""
        spec = self.route_group_spec
        if not self.has_backend_port() or spec is None:
            return None
        hostnames = self._stack_hostnames(spec.hosts)
        if not hostnames:
            return None

        backends = [
            RouteGroupBackend(
                name=self.name,
                type=SERVICE_BACKEND_TYPE,
                service_name=self.name,
                service_port=self.backend_port.int_value(),
                algorithm=spec.lb_algorithm,
            )
        ]
        for backend in spec.additional_backends:
            if backend.name == self.name:
                raise ValueError(
                    f"invalid additionalBackend '{backend.name}', overlaps with Stack name"
                )
            if backend.service_name == self.name:
                raise ValueError(
                    f"invalid additionalBackend '{backend.name}', serviceName "
                    f"'{backend.service_name}' overlaps with Stack name"
                )
            backends.append(backend)
        backends.sort(key=lambda backend: backend.name)

        meta = self._resource_meta()
        meta.annotations = merge_labels(meta.annotations, spec.annotations)
        return RouteGroup(
            metadata=meta,
            spec=RouteGroupResourceSpec(
                hosts=hostnames,
                backends=backends,
                default_backends=[RouteGroupBackendReference(backend_name=self.name, weight=100)],
                routes=list(spec.routes),
            ),
        )

    def generate_stack_status(self) -> StackStatus:
        """Build the status reported on the stack."""
        prescaling = PrescalingStatus()
        if self.prescaling_active:
            prescaling = PrescalingStatus(
                active=True,
                replicas=self.prescaling_replicas,
                desired_traffic_weight=self.prescaling_desired_traffic_weight,
                last_traffic_increase=self.prescaling_last_traffic_increase,
            )
        return StackStatus(
            actual_traffic_weight=self.actual_traffic_weight,
            desired_traffic_weight=self.desired_traffic_weight,
            replicas=self.created_replicas,
            ready_replicas=self.ready_replicas,
            updated_replicas=self.updated_replicas,
            desired_replicas=self.deployment_replicas,
            prescaling=prescaling,
            no_traffic_since=self.no_traffic_since,
            label_selector=label_selector_string(self.selector()),
        )