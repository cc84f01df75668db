from __future__ import annotations

import threading

from topology_reconciler.agent.reconciler import Reconciler, ReconcilerConfig
from topology_reconciler.core.errors import ApplyError
from topology_reconciler.core.events import MemoryEventSink
from topology_reconciler.core.retry import RetryPolicy
from topology_reconciler.core.types import (
    Cluster,
    FargateProfile,
    FargateSelector,
    NodeGroup,
    NodeGroupKind,
    ObservationStatus,
    ObservedRegion,
    ObservedTopology,
    Region,
    ResultStatus,
    Topology,
)
from topology_reconciler.execution.mock import InMemoryControlPlane
from topology_reconciler.planner import plan_operations

REGION = "us-east-1"


def make_node_group(name: str = "on-demand", instance_type: str = "m6i.large", max_size: int = 6) -> NodeGroup:
    return NodeGroup(
        name=name,
        kind=NodeGroupKind.on_demand,
        instance_type=instance_type,
        min_size=3,
        max_size=max_size,
        desired_size=3,
    )


def make_cluster(name: str, node_groups=(), fargate_profiles=()) -> Cluster:
    return Cluster(
        name=name,
        region=REGION,
        kubernetes_version="1.29",
        node_groups=tuple(node_groups),
        fargate_profiles=tuple(fargate_profiles),
    )


def make_desired(*clusters: Cluster) -> Topology:
    return Topology(
        regions=(
            Region(
                name=REGION,
                vpc_cidr="10.0.0.0/16",
                availability_zones=("us-east-1a", "us-east-1b"),
                clusters=clusters,
            ),
        )
    )


def observe(plane: InMemoryControlPlane) -> ObservedTopology:
    clusters = tuple(sorted(plane.clusters.get(REGION, {}).values(), key=lambda c: c.name))
    return ObservedTopology(regions=(ObservedRegion(name=REGION, status=ObservationStatus.known, clusters=clusters),))


def make_reconciler(plane: InMemoryControlPlane, events=None, attempts: int = 3) -> Reconciler:
    config = ReconcilerConfig(retry=RetryPolicy(max_attempts=attempts, base_delay_seconds=0.0))
    return Reconciler(plane.for_region(REGION), config, events)


def full_desired() -> Topology:
    return make_desired(
        make_cluster(
            "main",
            node_groups=[make_node_group()],
            fargate_profiles=[FargateProfile(name="backend", selectors=(FargateSelector(namespace="backend"),))],
        )
    )


def test_applies_plan_in_order_and_reaches_desired_state():
    plane = InMemoryControlPlane()
    desired = full_desired()
    ops = plan_operations(desired, observe(plane))
    events = MemoryEventSink()

    results = make_reconciler(plane, events).run(ops)

    assert [r.status for r in results] == [ResultStatus.applied] * 3
    assert [r.reason for r in results] == ["created"] * 3
    assert plane.calls == [
        "create us-east-1/main",
        "create us-east-1/main/nodegroup/on-demand",
        "create us-east-1/main/fargateprofile/backend",
    ]
    assert plane.get_cluster(REGION, "main") == desired.regions[0].clusters[0]
    assert len(events.of_type("operation_result")) == 3


def test_applying_the_same_plan_twice_is_idempotent():
    plane = InMemoryControlPlane()
    ops = plan_operations(full_desired(), observe(plane))

    make_reconciler(plane).run(ops)
    state_after_first = plane.get_cluster(REGION, "main")
    calls_after_first = list(plane.calls)

    second = make_reconciler(plane).run(ops)

    assert [r.status for r in second] == [ResultStatus.skipped] * 3
    assert all(r.reason == "already matches desired" for r in second)
    assert plane.get_cluster(REGION, "main") == state_after_first
    assert plane.calls == calls_after_first


def test_delete_of_absent_target_is_skipped():
    plane = InMemoryControlPlane()
    plane.add_cluster(make_cluster("legacy", node_groups=[make_node_group("workers")]))
    ops = plan_operations(make_desired(), observe(plane))

    first = make_reconciler(plane).run(ops)
    second = make_reconciler(plane).run(ops)

    assert [r.reason for r in first] == ["deleted", "deleted"]
    assert [r.reason for r in second] == ["already absent", "already absent"]
    assert plane.get_cluster(REGION, "legacy") is None


def test_retryable_failure_is_retried_with_attempt_count():
    plane = InMemoryControlPlane()
    plane.write_failures["us-east-1/main"] = [ApplyError("ThrottlingException", retryable=True)]
    ops = plan_operations(full_desired(), observe(plane))

    results = make_reconciler(plane).run(ops)

    assert results[0].status == ResultStatus.applied
    assert results[0].attempts == 2
    assert all(r.ok for r in results)


def test_non_retryable_failure_aborts_only_its_cluster():
    plane = InMemoryControlPlane()
    plane.add_cluster(make_cluster("main", node_groups=[make_node_group()]))
    plane.add_cluster(make_cluster("other", node_groups=[make_node_group()]))

    desired = make_desired(
        make_cluster("main", node_groups=[make_node_group(instance_type="m6i.xlarge"), make_node_group("extra")]),
        make_cluster("other", node_groups=[make_node_group(), make_node_group("extra")]),
    )
    plane.write_failures["us-east-1/main/nodegroup/extra"] = ApplyError("InvalidParameterException")
    ops = plan_operations(desired, observe(plane))

    results = {r.operation.target_id: r for r in make_reconciler(plane).run(ops)}

    failed = results["us-east-1/main/nodegroup/extra"]
    assert failed.status == ResultStatus.failed
    assert failed.attempts == 1
    assert "InvalidParameterException" in failed.reason

    aborted = results["us-east-1/main/nodegroup/on-demand"]
    assert aborted.status == ResultStatus.failed
    assert aborted.attempts == 0
    assert aborted.reason.startswith("not attempted: Create(NodeGroup extra) failed earlier")

    assert results["us-east-1/other/nodegroup/extra"].status == ResultStatus.applied
    assert "update us-east-1/main/nodegroup/on-demand" not in plane.calls


def test_immutable_node_group_change_fails_without_retry():
    plane = InMemoryControlPlane()
    plane.add_cluster(make_cluster("main", node_groups=[make_node_group()]))
    desired = make_desired(make_cluster("main", node_groups=[make_node_group(instance_type="m6i.xlarge")]))
    ops = plan_operations(desired, observe(plane))

    (result,) = make_reconciler(plane).run(ops)

    assert result.status == ResultStatus.failed
    assert result.attempts == 1
    assert "cannot change instance_type in place" in result.reason


def test_exhausted_retries_report_last_cause():
    plane = InMemoryControlPlane()
    plane.add_cluster(make_cluster("main", node_groups=[make_node_group()]))
    plane.write_failures["us-east-1/main/nodegroup/on-demand"] = ApplyError("ResourceInUseException", retryable=True)
    desired = make_desired(make_cluster("main", node_groups=[make_node_group(max_size=9)]))
    ops = plan_operations(desired, observe(plane))

    (result,) = make_reconciler(plane, attempts=4).run(ops)

    assert result.status == ResultStatus.failed
    assert result.attempts == 4
    assert result.reason == "ApplyError: ResourceInUseException"


def test_cancel_stops_new_operations():
    plane = InMemoryControlPlane()
    ops = plan_operations(full_desired(), observe(plane))
    cancel = threading.Event()
    cancel.set()

    results = make_reconciler(plane).run(ops, cancel)

    assert all(r.status == ResultStatus.failed for r in results)
    assert all(r.reason == "cancelled before apply" for r in results)
    assert plane.calls == []


def test_cancel_during_backoff_stops_retrying():
    plane = InMemoryControlPlane()
    plane.write_failures["us-east-1/main"] = ApplyError("ThrottlingException", retryable=True)
    ops = plan_operations(full_desired(), observe(plane))
    cancel = threading.Event()

    config = ReconcilerConfig(retry=RetryPolicy(max_attempts=5, base_delay_seconds=60.0))
    reconciler = Reconciler(plane.for_region(REGION), config)

    cancel.set()
    result = reconciler.apply(ops[0], cancel)

    assert result.status == ResultStatus.failed
    assert result.attempts == 1
    assert result.reason.startswith("cancelled during retry")
    assert plane.calls == ["create us-east-1/main"]


def test_unexpected_error_fails_the_operation_and_aborts_its_cluster():
    plane = InMemoryControlPlane()
    plane.write_failures["us-east-1/main"] = KeyError("arn")
    ops = plan_operations(full_desired(), observe(plane))

    results = make_reconciler(plane).run(ops)

    assert results[0].status == ResultStatus.failed
    assert results[0].reason == "unexpected KeyError: 'arn'"
    assert all(r.reason.startswith("not attempted:") for r in results[1:])
    assert plane.calls == ["create us-east-1/main"]
