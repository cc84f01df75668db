"""
Region coordinator.

Fans the reconciler out across regions, one worker per region.

Regions share no mutable state and have no cross region invariant, so they
run concurrently without locking. A failure in one region never blocks or
rolls back another; each region gets its own report.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from topology_reconciler.agent.reconciler import Reconciler, ReconcilerConfig
from topology_reconciler.core.errors import AuthError, PartialRegionFailure
from topology_reconciler.core.events import EventSink
from topology_reconciler.core.serialization import region_report_to_json, run_report_to_json
from topology_reconciler.core.types import ObservedTopology, Operation, RegionReport, RunReport
from topology_reconciler.execution.base import ControlPlaneClientFactory
from topology_reconciler.planner.diff import operations_for_region

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CoordinatorConfig:
    """
    Coordinator configuration.

    max_workers
    Upper bound on regions reconciled at the same time.

    reconciler
    Passed to every per region Reconciler.
    """

    max_workers: int = 8
    reconciler: ReconcilerConfig = field(default_factory=ReconcilerConfig)


class RegionCoordinator:
    """Run per region reconcilers concurrently and aggregate their reports."""

    def __init__(
        self,
        client_factory: ControlPlaneClientFactory,
        config: CoordinatorConfig | None = None,
        events: EventSink | None = None,
    ) -> None:
        self._factory = client_factory
        self._config = config or CoordinatorConfig()
        self._events = events

    def run(
        self,
        operations: list[Operation],
        observed: ObservedTopology,
        regions: list[str],
        dry_run: bool = False,
        cancel: threading.Event | None = None,
    ) -> RunReport:
        """
        Reconcile every region and return the aggregate report.

        dry_run
        Report planned operations without calling apply.
        """
        names = sorted(set(regions))
        reports: list[RegionReport] = []

        if names:
            workers = max(1, min(len(names), self._config.max_workers))
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="region") as pool:
                reports = list(
                    pool.map(
                        lambda r: self._run_region(r, operations_for_region(operations, r), observed, dry_run, cancel),
                        names,
                    )
                )

        report = RunReport(regions=tuple(reports), dry_run=dry_run)

        if self._events is not None:
            event = run_report_to_json(report)
            event["type"] = "run_report"
            event.pop("regions")
            event["failed_regions"] = [r.region for r in report.regions if not r.ok]
            self._events.emit(event)

        return report

    def _run_region(
        self,
        region: str,
        planned: list[Operation],
        observed: ObservedTopology,
        dry_run: bool,
        cancel: threading.Event | None,
    ) -> RegionReport:
        try:
            report = self._reconcile_region(region, planned, observed, dry_run, cancel)
        except Exception as exc:
            logger.exception("unexpected error reconciling region %s", region)
            report = RegionReport(
                region=region,
                planned=tuple(planned),
                error=f"unexpected {type(exc).__name__}: {exc}",
                error_kind="region_error",
            )

        if report.ok:
            logger.info("region %s done: %d planned, %d results", region, len(report.planned), len(report.results))
        else:
            logger.error("region %s failed: %s", region, report.error)

        if self._events is not None:
            event = region_report_to_json(report)
            event["type"] = "region_report"
            event.pop("planned")
            event.pop("results")
            self._events.emit(event)

        return report

    def _reconcile_region(
        self,
        region: str,
        planned: list[Operation],
        observed: ObservedTopology,
        dry_run: bool,
        cancel: threading.Event | None,
    ) -> RegionReport:
        o_region = observed.region(region)
        if o_region is None:
            return RegionReport(
                region=region,
                planned=tuple(planned),
                error=f"region {region} was not collected",
                error_kind="collection_error",
            )
        if not o_region.known:
            return RegionReport(
                region=region,
                planned=tuple(planned),
                error=o_region.error,
                error_kind=o_region.error_kind,
            )

        if dry_run:
            return RegionReport(region=region, planned=tuple(planned))

        try:
            client = self._factory.for_region(region)
        except AuthError as exc:
            return RegionReport(
                region=region,
                planned=tuple(planned),
                error=str(exc),
                error_kind="auth_error",
            )

        reconciler = Reconciler(client, self._config.reconciler, self._events)
        results = reconciler.run(planned, cancel)

        failed = [r.operation.cluster for r in results if not r.ok]
        if failed:
            failure = PartialRegionFailure(region, failed)
            return RegionReport(
                region=region,
                results=tuple(results),
                planned=tuple(planned),
                error=str(failure),
                error_kind="partial_region_failure",
            )

        return RegionReport(region=region, results=tuple(results), planned=tuple(planned))
