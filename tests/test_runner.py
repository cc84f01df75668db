from __future__ import annotations

import pytest

from topology_reconciler.agent.coordinator import CoordinatorConfig, RegionCoordinator
from topology_reconciler.agent.reconciler import ReconcilerConfig
from topology_reconciler.agent.runner import ExecutionMode, ReconcileRunner, RunnerConfig
from topology_reconciler.core.errors import AuthError, CollectionError, ConfigError
from topology_reconciler.core.events import MemoryEventSink
from topology_reconciler.core.retry import RetryPolicy
from topology_reconciler.core.types import (
    Cluster,
    ObservationStatus,
    ObservedRegion,
    ObservedTopology,
    ResultStatus,
)
from topology_reconciler.desired.base import RegionLayers
from topology_reconciler.desired.loader import DesiredStateLoader
from topology_reconciler.execution.mock import InMemoryControlPlane
from topology_reconciler.observed.collector import CollectorConfig

FAST_RETRY = RetryPolicy(max_attempts=3, base_delay_seconds=0.0)


class FakeLayerSource:
    """Serve fixed layers, one region overlay per region."""

    def __init__(self, overlays: dict[str, dict]) -> None:
        self.overlays = overlays
        self.fetches = 0

    def fetch(self, regions: list[str]) -> dict[str, RegionLayers]:
        self.fetches += 1
        return {r: RegionLayers(region=r, region_overlay=self.overlays.get(r, {})) for r in regions}


def make_overlay(region: str, cidr: str) -> dict:
    return {
        "vpc_cidr": cidr,
        "availability_zones": [f"{region}a", f"{region}b"],
        "clusters": {
            "main": {
                "kubernetes_version": "1.29",
                "node_groups": {
                    "on-demand": {"instance_type": "m6i.large", "min_size": 3, "max_size": 6, "desired_size": 3},
                },
                "fargate_profiles": {
                    "backend": {"selectors": [{"namespace": "backend"}]},
                },
            }
        },
    }


def make_source() -> FakeLayerSource:
    return FakeLayerSource(
        {
            "us-east-1": make_overlay("us-east-1", "10.0.0.0/16"),
            "us-west-2": make_overlay("us-west-2", "10.1.0.0/16"),
        }
    )


def make_runner(plane, source=None, mode: ExecutionMode = ExecutionMode.apply, events=None) -> ReconcileRunner:
    config = RunnerConfig(
        regions=("us-east-1", "us-west-2"),
        mode=mode,
        interval_seconds=0.0,
        collector=CollectorConfig(retry=FAST_RETRY),
        coordinator=CoordinatorConfig(reconciler=ReconcilerConfig(retry=FAST_RETRY)),
    )
    return ReconcileRunner(DesiredStateLoader(source or make_source()), plane, config, events)


def test_full_cycle_applies_every_region():
    plane = InMemoryControlPlane()

    report = make_runner(plane).run_cycle()

    assert report.ok
    assert report.exit_code == 0
    for region in ("us-east-1", "us-west-2"):
        region_report = report.region(region)
        assert [r.status for r in region_report.results] == [ResultStatus.applied] * 3
        assert plane.get_cluster(region, "main") is not None


def test_failed_collection_in_one_region_does_not_block_another():
    plane = InMemoryControlPlane()
    plane.read_failures["us-west-2"] = CollectionError("list clusters us-west-2: ThrottlingException")
    events = MemoryEventSink()

    report = make_runner(plane, events=events).run_cycle()

    east = report.region("us-east-1")
    assert east.ok
    assert [r.status for r in east.results] == [ResultStatus.applied] * 3

    west = report.region("us-west-2")
    assert not west.ok
    assert west.error_kind == "collection_error"
    assert "ThrottlingException" in west.error
    assert west.results == ()
    assert len(west.planned) == 3
    assert plane.get_cluster("us-west-2", "main") is None

    assert report.exit_code == 1
    (run_event,) = events.of_type("run_report")
    assert run_event["failed_regions"] == ["us-west-2"]


def test_dry_run_plans_without_applying():
    plane = InMemoryControlPlane()

    report = make_runner(plane, mode=ExecutionMode.dry_run).run_cycle()

    assert report.dry_run
    assert report.ok
    assert plane.calls == []
    assert [str(op) for op in report.region("us-east-1").planned] == [
        "Create(Cluster main)",
        "Create(NodeGroup on-demand)",
        "Create(FargateProfile backend)",
    ]


def test_second_cycle_converges_to_skips():
    plane = InMemoryControlPlane()
    runner = make_runner(plane)

    runner.run_cycle()
    calls = list(plane.calls)
    report = runner.run_cycle()

    assert report.ok
    assert all(region.planned == () for region in report.regions)
    assert plane.calls == calls


def test_invalid_desired_state_aborts_before_any_call():
    plane = InMemoryControlPlane()
    source = make_source()
    source.overlays["us-east-1"]["availability_zones"] = ["us-east-1a"]

    with pytest.raises(ConfigError):
        make_runner(plane, source=source).run_cycle()

    assert plane.calls == []


def test_partial_region_failure_names_failed_clusters():
    plane = InMemoryControlPlane()
    plane.write_failures["us-east-1/main/nodegroup/on-demand"] = AuthError("AccessDeniedException")

    report = make_runner(plane).run_cycle()

    east = report.region("us-east-1")
    assert east.error_kind == "partial_region_failure"
    assert east.error == "region us-east-1 has failed clusters: main"
    assert [r.status for r in east.results] == [
        ResultStatus.applied,
        ResultStatus.failed,
        ResultStatus.failed,
    ]
    assert report.region("us-west-2").ok
    assert report.exit_code == 1


def test_run_forever_stops_on_cancel():
    plane = InMemoryControlPlane()
    runner = make_runner(plane)
    reports = []

    def on_report(report):
        reports.append(report)
        if len(reports) == 2:
            runner.stop()

    runner.run_forever(on_report)

    assert len(reports) == 2
    assert runner.cancel.is_set()


def test_run_forever_skips_invalid_cycle():
    plane = InMemoryControlPlane()
    source = make_source()
    source.overlays["us-east-1"]["vpc_cidr"] = None
    runner = make_runner(plane, source=source)

    original_fetch = source.fetch

    def fetch_then_stop(regions):
        if source.fetches == 1:
            runner.stop()
        return original_fetch(regions)

    source.fetch = fetch_then_stop
    last = runner.run_forever()

    assert last is None
    assert source.fetches == 2
    assert plane.calls == []


class FailingFactory:
    def for_region(self, region: str):
        raise AuthError(f"no credentials for {region}")


def test_coordinator_reports_client_auth_failure_per_region():
    observed = ObservedTopology(
        regions=(ObservedRegion(name="us-east-1", status=ObservationStatus.known, clusters=()),)
    )

    report = RegionCoordinator(FailingFactory()).run([], observed, ["us-east-1"])

    region = report.region("us-east-1")
    assert region.error_kind == "auth_error"
    assert region.error == "no credentials for us-east-1"
    assert report.exit_code == 1


def test_coordinator_treats_uncollected_region_as_failed():
    plane = InMemoryControlPlane()
    plane.add_cluster(Cluster(name="main", region="us-east-1", kubernetes_version="1.29"))

    report = RegionCoordinator(plane).run([], ObservedTopology(), ["us-east-1"])

    region = report.region("us-east-1")
    assert region.error_kind == "collection_error"
    assert plane.calls == []


class BrokenFactory:
    def __init__(self, plane: InMemoryControlPlane, broken: str) -> None:
        self.plane = plane
        self.broken = broken

    def for_region(self, region: str):
        if region == self.broken:
            raise RuntimeError("endpoint resolver failed")
        return self.plane.for_region(region)


def test_coordinator_contains_unexpected_error_to_its_region():
    plane = InMemoryControlPlane()
    observed = ObservedTopology(
        regions=tuple(
            ObservedRegion(name=r, status=ObservationStatus.known, clusters=()) for r in ("us-east-1", "us-west-2")
        )
    )

    report = RegionCoordinator(BrokenFactory(plane, "us-west-2")).run([], observed, ["us-east-1", "us-west-2"])

    assert report.region("us-east-1").ok
    west = report.region("us-west-2")
    assert west.error_kind == "region_error"
    assert west.error == "unexpected RuntimeError: endpoint resolver failed"
    assert report.exit_code == 1


def test_managed_tag_keeps_created_clusters_visible_to_later_cycles():
    plane = InMemoryControlPlane()
    source = make_source()
    config = RunnerConfig(
        regions=("us-east-1",),
        interval_seconds=0.0,
        collector=CollectorConfig(retry=FAST_RETRY, managed_tag_key="managed-by"),
        coordinator=CoordinatorConfig(reconciler=ReconcilerConfig(retry=FAST_RETRY)),
    )
    runner = ReconcileRunner(DesiredStateLoader(source, managed_tag_key="managed-by"), plane, config)

    runner.run_cycle()
    assert plane.get_cluster("us-east-1", "main").tags == {"managed-by": "true"}

    del source.overlays["us-east-1"]["clusters"]["main"]["node_groups"]
    report = runner.run_cycle()

    assert [str(op) for op in report.region("us-east-1").planned] == ["Delete(NodeGroup on-demand)"]
    assert report.ok
    assert plane.get_cluster("us-east-1", "main").node_groups == ()


def test_run_forever_returns_last_report_with_its_exit_code():
    plane = InMemoryControlPlane()
    plane.read_failures["us-west-2"] = CollectionError("ThrottlingException")
    runner = make_runner(plane)

    last = runner.run_forever(lambda report: runner.stop())

    assert last is not None
    assert last.exit_code == 1
    assert last.region("us-west-2").error_kind == "collection_error"
