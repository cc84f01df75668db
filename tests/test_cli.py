from __future__ import annotations

import io
import json
from pathlib import Path

import pytest
import yaml

from topology_reconciler.cli import build_parser, main
from topology_reconciler.core.errors import CollectionError
from topology_reconciler.execution.mock import InMemoryControlPlane


def write_config(tmp_path: Path, **region_extra) -> Path:
    document = {
        "defaults": {"cluster_defaults": {"kubernetes_version": "1.29"}},
        "regions": {
            "us-east-1": {
                "vpc_cidr": "10.0.0.0/16",
                "availability_zones": ["us-east-1a", "us-east-1b"],
                "clusters": {
                    "main": {
                        "node_groups": {
                            "on-demand": {"instance_type": "m6i.large", "min_size": 3, "max_size": 6},
                        }
                    }
                },
            },
            "us-west-2": {
                "vpc_cidr": "10.1.0.0/16",
                "availability_zones": ["us-west-2a", "us-west-2b"],
                "clusters": {"main": {}},
            },
        },
    }
    document["regions"]["us-east-1"].update(region_extra)
    path = tmp_path / "topology.yaml"
    path.write_text(yaml.safe_dump(document), encoding="utf-8")
    return path


def run(argv: list[str], plane: InMemoryControlPlane) -> tuple[int, str]:
    out = io.StringIO()
    code = main(argv, client_factory=plane, out=out)
    return code, out.getvalue()


def test_dry_run_reports_plan_and_applies_nothing(tmp_path: Path):
    plane = InMemoryControlPlane()
    config = write_config(tmp_path)

    code, output = run(["--region", "us-east-1", "--config", str(config), "--dry-run"], plane)

    assert code == 0
    assert "region us-east-1: ok" in output
    assert "[1] Create(Cluster main) us-east-1/main planned" in output
    assert "[2] Create(NodeGroup on-demand) us-east-1/main/nodegroup/on-demand planned" in output
    assert plane.calls == []


def test_apply_reports_every_outcome_and_exit_code(tmp_path: Path):
    plane = InMemoryControlPlane()
    plane.read_failures["us-west-2"] = CollectionError("ThrottlingException")
    config = write_config(tmp_path)

    code, output = run(
        [
            "--region",
            "us-east-1",
            "us-west-2",
            "--config",
            str(config),
            "--backoff",
            "0",
            "--json",
        ],
        plane,
    )

    assert code == 1
    report = json.loads(output)
    assert report["exit_code"] == 1
    east, west = report["regions"]
    assert east["ok"] is True
    assert [r["status"] for r in east["results"]] == ["applied", "applied"]
    assert west["error_kind"] == "collection_error"
    assert west["results"] == []


def test_invalid_desired_state_exits_with_two(tmp_path: Path, capsys):
    plane = InMemoryControlPlane()
    config = write_config(tmp_path, vpc_cidr="10.0.0.0/33")

    code, output = run(["--region", "us-east-1", "--config", str(config)], plane)

    assert code == 2
    assert output == ""
    assert "invalid vpc_cidr" in capsys.readouterr().err
    assert plane.calls == []


def test_missing_region_is_usage_error():
    with pytest.raises(SystemExit) as info:
        main(["--dry-run"], client_factory=InMemoryControlPlane(), out=io.StringIO())
    assert info.value.code == 2


def test_show_desired_prints_merged_topology(tmp_path: Path):
    config = write_config(tmp_path)

    code, output = run(["--region", "us-east-1", "--config", str(config), "--show-desired"], InMemoryControlPlane())

    assert code == 0
    topology = json.loads(output)
    (region,) = topology["regions"]
    assert region["name"] == "us-east-1"
    assert region["clusters"][0]["kubernetes_version"] == "1.29"
    assert region["clusters"][0]["node_groups"][0]["kind"] == "on-demand"


def test_events_file_receives_operation_results(tmp_path: Path):
    plane = InMemoryControlPlane()
    config = write_config(tmp_path)
    events_path = tmp_path / "events" / "run.jsonl"

    code, _ = run(
        ["--region", "us-east-1", "--config", str(config), "--events-file", str(events_path)],
        plane,
    )

    assert code == 0
    events = [json.loads(line) for line in events_path.read_text(encoding="utf-8").splitlines()]
    types = [e["type"] for e in events]
    assert types.count("operation_result") == 2
    assert types[-1] == "run_report"
    assert all("ts_unix" in e for e in events)


def test_config_directory_uses_stacks_layout(tmp_path: Path):
    stacks = tmp_path / "stacks"
    (stacks / "regions").mkdir(parents=True)
    (stacks / "regions" / "us-east-1.yaml").write_text(
        "vpc_cidr: 10.0.0.0/16\navailability_zones: [us-east-1a, us-east-1b]\n"
        "clusters:\n  main:\n    kubernetes_version: '1.29'\n",
        encoding="utf-8",
    )

    code, output = run(["--region", "us-east-1", "--config", str(stacks), "--dry-run"], InMemoryControlPlane())

    assert code == 0
    assert "Create(Cluster main)" in output


def test_waits_for_eks_by_default_and_no_wait_opts_out():
    parser = build_parser()

    assert parser.parse_args(["--region", "us-east-1"]).wait is True
    assert parser.parse_args(["--region", "us-east-1", "--no-wait"]).wait is False
