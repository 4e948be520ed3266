# stackset

This package holds the decision logic for StackSets. A StackSet owns a series of
versioned Stacks and moves traffic between them in a controlled way. The package
works on plain Python objects and never talks to a cluster by itself.

## What it does

- `stackset.model` describes Stacks, StackSets and the resources that belong to
  them as dataclasses. The resources are Deployment, Service, Ingress,
  RouteGroup and HorizontalPodAutoscaler. The module also has helpers such as
  `merge_labels`, `effective_replicas`, `is_resource_up_to_date` and
  `find_backend_port`.
- `stackset.state` reads the current state of each Stack from its resources.
  The classes are `StackContainerState` and `StackSetState`. Their
  `update_from_resources()` fills in:
  - the replica counts;
  - whether every resource is up to date;
  - the desired and actual traffic weights.
  `traffic_changes()` lists the Stacks whose actual weight changed.
- `stackset.stack_resources.StackContainer` builds what each Stack should have:
  - `generate_deployment()`, `generate_service()`, `generate_ingress()` and
    `generate_route_group()` return the resources;
  - `generate_stack_status()` returns the status.
- `stackset.stackset.StackSetContainer` works at the StackSet level:
  - `new_stack()` decides which Stack to create;
  - `mark_expired_stacks()` marks old Stacks without traffic for removal once
    the history limit is reached;
  - `generate_ingress()` and `generate_route_group()` build the shared resources;
  - `generate_stack_set_status()` and `generate_stack_set_traffic()` build the
    StackSet's status and desired traffic.
- `stackset.weights` normalises weights to a sum of 100 and rounds them to whole
  numbers with the largest remainder method.
- `StackSetTraffic.manage_traffic()` in `stackset.traffic` moves traffic between
  Stacks:
  1. It normalises the desired and actual weights.
  2. If no Stack gets traffic, it picks a fallback Stack (see
     `find_fallback_stack`).
  3. It runs the traffic reconciler.
  4. It updates each Stack's no-traffic timestamp.
- `stackset.reconcilers` offers two reconcilers:
  - `SimpleTrafficReconciler` switches traffic to Stacks once they are ready.
  - `PrescalingTrafficReconciler` first scales a Stack up to the replicas its
    share of traffic needs.
- `stackset.switcher.Switcher` sets the desired weight of one Stack and scales
  the others to keep the total at 100. It reads and patches the cluster through
  any object that implements the `TrafficClient` protocol.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Example

```python
from stackset.model import IntOrString, ObjectMeta, StackSet, StackSetIngressSpec, StackSetSpec
from stackset.reconcilers import SimpleTrafficReconciler
from stackset.stackset import new_container

stackset = StackSet(
    metadata=ObjectMeta(name="foo", namespace="bar"),
    spec=StackSetSpec(
        ingress=StackSetIngressSpec(backend_port=IntOrString.from_int(80)),
    ),
)
container = new_container(
    stackset,
    SimpleTrafficReconciler(),
    "zalando.org/backend-weights",
    ["example.org"],
)

stack, version = container.new_stack()
```

Once the Stacks and their resources are in `container.stack_containers`, work
through these steps:

1. Call `container.update_from_resources()` to read the current state.
2. Call `container.manage_traffic(now)` to move traffic.
3. Write back what these return: `generate_ingress()`, `generate_route_group()`
   and `generate_stack_set_status()`.

## Errors

Errors are raised as exceptions:

- `StacksNotReadyError` (`stackset.reconcilers`): some Stacks are not ready yet,
  so traffic cannot move. `manage_traffic()` still updates the weights and the
  no-traffic timestamps before it raises this error.
- `NoStacksError` (`stackset.traffic`): there is no Stack that could take the
  traffic.
- `SwitchError` (`stackset.switcher`): the weights could not be read, or the
  requested change is not possible.
- `ValueError`: the configuration is invalid. Examples are backend ports that do
  not match, a backend port that matches no service port, overlapping additional
  backends, and a StackSet ingress with no Stack getting traffic.

## What it does not do

The package has no controller loop, command or server. It has no Kubernetes
client: reading resources from a cluster and writing them back is left to the
caller. It does not record events. It does not generate HorizontalPodAutoscaler
objects: the model describes them, and they take part in the up-to-date check
only.