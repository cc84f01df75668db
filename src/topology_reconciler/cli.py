"""
Command line entry point.

reconcile --region us-east-1 --region us-west-2 [--dry-run]

Exit codes
0  every region applied or skipped every operation
1  any region failed collection or reported a failed operation
2  invalid desired state or invalid arguments
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
from pathlib import Path
from typing import Any, TextIO

from topology_reconciler.agent.coordinator import CoordinatorConfig
from topology_reconciler.agent.reconciler import ReconcilerConfig
from topology_reconciler.agent.runner import ExecutionMode, ReconcileRunner, RunnerConfig
from topology_reconciler.core.errors import ConfigError
from topology_reconciler.core.events import EventSink, FanoutEventSink, JsonlEventSink, LoggingEventSink
from topology_reconciler.core.retry import RetryPolicy
from topology_reconciler.core.serialization import run_report_to_json, to_json_safe_dict
from topology_reconciler.core.types import RunReport
from topology_reconciler.desired.base import LayerSource
from topology_reconciler.desired.directory_source import DirectoryLayerSource
from topology_reconciler.desired.loader import DesiredStateLoader
from topology_reconciler.desired.static_source import StaticLayerSource
from topology_reconciler.execution.base import ControlPlaneClientFactory
from topology_reconciler.execution.eks import EksClientConfig, EksClientFactory
from topology_reconciler.observed.collector import CollectorConfig

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reconcile",
        description="Reconcile multi region EKS cluster topology against layered desired state.",
    )
    parser.add_argument(
        "--region",
        dest="regions",
        action="extend",
        nargs="+",
        required=True,
        metavar="NAME",
        help="region to reconcile, repeatable",
    )
    parser.add_argument("--dry-run", action="store_true", help="compute and report operations without applying")
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(os.getenv("RECONCILE_CONFIG", "stacks")),
        help="stacks directory or single YAML/JSON document (env RECONCILE_CONFIG)",
    )
    parser.add_argument(
        "--environment",
        default=os.getenv("RECONCILE_ENVIRONMENT", ""),
        help="environment overlay name (env RECONCILE_ENVIRONMENT)",
    )
    parser.add_argument("--max-attempts", type=int, default=3, help="attempts per API call and operation")
    parser.add_argument("--backoff", type=float, default=1.0, help="base backoff delay in seconds")
    parser.add_argument("--timeout", type=float, default=30.0, help="read timeout per API call in seconds")
    parser.add_argument(
        "--no-wait",
        dest="wait",
        action="store_false",
        help="return from EKS creates and deletes without waiting for them to settle",
    )
    parser.add_argument("--interval", type=float, default=0.0, help="run continuously every N seconds")
    parser.add_argument("--profile", default=None, help="AWS shared credentials profile")
    parser.add_argument("--managed-tag", default=None, help="only manage clusters carrying this tag key")
    parser.add_argument("--events-file", type=Path, default=None, help="append JSON line events to this file")
    parser.add_argument("--json", action="store_true", help="print the report as JSON")
    parser.add_argument("--show-desired", action="store_true", help="print the merged desired state and exit")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser


def layer_source_for(path: Path, environment: str) -> LayerSource:
    if path.is_dir():
        return DirectoryLayerSource(root=path, environment=environment)
    return StaticLayerSource(path=path, environment=environment)


def render_report(report: RunReport, out: TextIO) -> None:
    """Plain text report. Every operation outcome is listed with its cause."""
    for region in report.regions:
        status = "ok" if region.ok else f"FAILED {region.error_kind}: {region.error}"
        out.write(f"region {region.region}: {status}\n")

        if report.dry_run or not region.results:
            for op in region.planned:
                changes = f" changes={','.join(op.changes)}" if op.changes else ""
                out.write(f"  [{op.sequence}] {op} {op.target_id} planned{changes}\n")
            continue

        for result in region.results:
            op = result.operation
            out.write(
                f"  [{op.sequence}] {op} {op.target_id} {result.status.value} "
                f"({result.reason}) attempts={result.attempts}\n"
            )

    failed = [r.region for r in report.regions if not r.ok]
    if failed:
        out.write(f"result: {len(failed)} region(s) failed: {', '.join(failed)}\n")
    else:
        out.write("result: ok\n")


def _events_for(args: argparse.Namespace) -> EventSink:
    sinks: list[EventSink] = [LoggingEventSink(level=logging.DEBUG)]
    if args.events_file is not None:
        sinks.append(JsonlEventSink(path=args.events_file))
    return FanoutEventSink(sinks=tuple(sinks))


def main(
    argv: list[str] | None = None,
    client_factory: ControlPlaneClientFactory | None = None,
    out: TextIO | None = None,
) -> int:
    out = out or sys.stdout
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(threadName)s %(name)s: %(message)s",
    )

    if args.max_attempts < 1:
        print("--max-attempts must be at least 1", file=sys.stderr)
        return 2

    loader = DesiredStateLoader(layer_source_for(args.config, args.environment), managed_tag_key=args.managed_tag)
    regions = sorted(set(args.regions))

    if args.show_desired:
        try:
            desired = loader.load(regions)
        except ConfigError as exc:
            print(f"config error: {exc}", file=sys.stderr)
            return 2
        out.write(json.dumps(to_json_safe_dict(desired), indent=2, sort_keys=True) + "\n")
        return 0

    retry = RetryPolicy(max_attempts=args.max_attempts, base_delay_seconds=args.backoff)
    if client_factory is None:
        client_factory = EksClientFactory(
            EksClientConfig(
                profile_name=args.profile,
                read_timeout_seconds=args.timeout,
                wait=args.wait,
            )
        )

    config = RunnerConfig(
        regions=tuple(regions),
        mode=ExecutionMode.dry_run if args.dry_run else ExecutionMode.apply,
        interval_seconds=args.interval,
        collector=CollectorConfig(retry=retry, managed_tag_key=args.managed_tag),
        coordinator=CoordinatorConfig(reconciler=ReconcilerConfig(retry=retry)),
    )
    runner = ReconcileRunner(loader, client_factory, config, events=_events_for(args))

    def _emit(report: RunReport) -> None:
        if args.json:
            out.write(json.dumps(run_report_to_json(report), indent=2, sort_keys=True) + "\n")
        else:
            render_report(report, out)
        out.flush()

    def _stop(signum: int, _frame: Any) -> None:
        logger.warning("received signal %d, finishing in flight operations", signum)
        runner.stop()

    previous = {sig: signal.signal(sig, _stop) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        if args.interval > 0:
            last = runner.run_forever(on_report=_emit)
            # No completed cycle means every cycle had an invalid desired state.
            return last.exit_code if last is not None else 2

        try:
            report = runner.run_cycle()
        except ConfigError as exc:
            print(f"config error: {exc}", file=sys.stderr)
            return 2

        _emit(report)
        return report.exit_code
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


if __name__ == "__main__":
    sys.exit(main())
