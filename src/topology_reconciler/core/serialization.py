from __future__ import annotations

from dataclasses import asdict
from typing import Any

from topology_reconciler.core.types import Operation, OperationResult, RegionReport, RunReport


def _normalize(obj: Any) -> Any:
    if hasattr(obj, "value"):
        return obj.value
    if isinstance(obj, dict):
        return {str(k): _normalize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_normalize(v) for v in obj]
    return obj


def to_json_safe_dict(obj: Any) -> dict[str, Any]:
    """
    Convert a dataclass object into a JSON safe dict.

    This is intended for transport only.
    """
    raw = asdict(obj)
    normalized = _normalize(raw)
    if not isinstance(normalized, dict):
        raise TypeError("expected dict after normalization")
    return normalized


def operation_to_json(op: Operation) -> dict[str, Any]:
    """Compact operation shape. The desired payload is left out of reports."""
    return {
        "sequence": op.sequence,
        "operation": str(op),
        "kind": op.kind.value,
        "entity": op.entity.value,
        "target": op.target_id,
        "changes": list(op.changes),
    }


def result_to_json(result: OperationResult) -> dict[str, Any]:
    payload = operation_to_json(result.operation)
    payload["status"] = result.status.value
    payload["reason"] = result.reason
    payload["attempts"] = result.attempts
    return payload


def region_report_to_json(report: RegionReport) -> dict[str, Any]:
    return {
        "region": report.region,
        "ok": report.ok,
        "error": report.error,
        "error_kind": report.error_kind,
        "planned": [operation_to_json(op) for op in report.planned],
        "results": [result_to_json(r) for r in report.results],
    }


def run_report_to_json(report: RunReport) -> dict[str, Any]:
    """
    RunReport transport shape.

    ok and exit_code are properties, so we add them explicitly.
    """
    return {
        "ok": report.ok,
        "exit_code": report.exit_code,
        "dry_run": report.dry_run,
        "regions": [region_report_to_json(r) for r in report.regions],
    }
