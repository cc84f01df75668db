"""
Reconcile runner.

Purpose
One cycle:
- Load desired state
- Collect observed state
- Diff
- Reconcile regions, or report the plan on dry run

Continuously, on an interval, until stopped.

This is the composition layer of the system.
It wires loader, collector, diff engine, coordinator and event sink.

A ConfigError from the loader aborts the cycle before any control plane
call is made. Every other failure is captured in the report.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Callable

from topology_reconciler.agent.coordinator import CoordinatorConfig, RegionCoordinator
from topology_reconciler.core.errors import ConfigError
from topology_reconciler.core.events import EventSink
from topology_reconciler.core.types import RunReport
from topology_reconciler.desired.loader import DesiredStateLoader
from topology_reconciler.execution.base import ControlPlaneClientFactory
from topology_reconciler.observed.collector import CollectorConfig, ObservedStateCollector
from topology_reconciler.planner.diff import plan_operations

logger = logging.getLogger(__name__)


class ExecutionMode(StrEnum):
    """
    apply runs the coordinator against the control plane.
    dry_run stops after the diff and reports planned operations.
    """

    apply = "apply"
    dry_run = "dry_run"


@dataclass(frozen=True)
class RunnerConfig:
    """
    Runner configuration.

    regions
    Regions to reconcile.

    mode
    apply or dry_run.

    interval_seconds
    Sleep duration between cycles in run_forever.
    """

    regions: tuple[str, ...]
    mode: ExecutionMode = ExecutionMode.apply
    interval_seconds: float = 300.0
    collector: CollectorConfig = field(default_factory=CollectorConfig)
    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)


class ReconcileRunner:
    """
    Top level reconciliation loop.

    This is not the reconciler.
    This is the runtime loop around it.
    """

    def __init__(
        self,
        loader: DesiredStateLoader,
        client_factory: ControlPlaneClientFactory,
        config: RunnerConfig,
        events: EventSink | None = None,
    ) -> None:
        self._loader = loader
        self._config = config
        self._collector = ObservedStateCollector(client_factory, config.collector, events)
        self._coordinator = RegionCoordinator(client_factory, config.coordinator, events)
        self.cancel = threading.Event()

    def run_cycle(self) -> RunReport:
        """
        Execute one reconciliation cycle.

        Raises ConfigError when the desired state is invalid.
        """
        regions = list(self._config.regions)
        dry_run = self._config.mode == ExecutionMode.dry_run

        desired = self._loader.load(regions)
        observed = self._collector.collect(regions, self.cancel)
        operations = plan_operations(desired, observed)

        logger.info(
            "planned %d operations across %d regions (%s)",
            len(operations),
            len(regions),
            self._config.mode.value,
        )

        return self._coordinator.run(operations, observed, regions, dry_run=dry_run, cancel=self.cancel)

    def run_forever(self, on_report: Callable[[RunReport], None] | None = None) -> RunReport | None:
        """
        Continuous loop execution.

        Stops when cancel is set. The interval sleep wakes early on cancel.
        An invalid desired state skips the cycle, nothing is applied.
        Returns the last completed report, None when no cycle completed.
        """
        last: RunReport | None = None
        while not self.cancel.is_set():
            try:
                report = self.run_cycle()
            except ConfigError as exc:
                logger.error("skipping cycle, desired state is invalid: %s", exc)
                self.cancel.wait(self._config.interval_seconds)
                continue

            last = report
            if on_report is not None:
                on_report(report)
            if not report.ok:
                logger.warning("cycle finished with failures, exit code %d", report.exit_code)
            self.cancel.wait(self._config.interval_seconds)
        return last

    def stop(self) -> None:
        """Request cancellation. In flight operations finish."""
        self.cancel.set()
