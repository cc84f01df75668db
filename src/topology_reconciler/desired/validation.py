"""
Region validation.

This module enforces the topology invariants before anything is applied:

Network
- The VPC CIDR and every subnet CIDR must parse.
- Subnets must sit inside the VPC CIDR.
- Sibling subnets must not overlap.
- Subnet availability zones must be declared for the region.

High availability
- A high availability region spans at least two availability zones.

Compute
- Cluster names are unique within a region.
- Node group capacity satisfies min <= desired <= max.
- Fargate profiles have at least one selector and no empty namespace.

Spot node groups without taints are a warning, because nothing keeps
critical workloads off interruptible capacity.
"""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass
from typing import Dict, List

from topology_reconciler.core.types import NodeGroupKind, Region


@dataclass
class RegionValidationResult:
    """
    Result of region validation.

    ok means no blocking error was found.
    errors are blocking.
    warnings are non blocking but should be reviewed.
    evidence contains structured counts used in logs.
    """

    ok: bool
    errors: List[str]
    warnings: List[str]
    evidence: Dict[str, object]


def _validate_network(region: Region, errors: List[str]) -> None:
    try:
        vpc = ipaddress.ip_network(region.vpc_cidr, strict=True)
    except ValueError as exc:
        errors.append(f"region {region.name}: invalid vpc_cidr {region.vpc_cidr}: {exc}")
        return

    azs = set(region.availability_zones)
    parsed: list[tuple[str, ipaddress.IPv4Network | ipaddress.IPv6Network]] = []

    for sn in region.subnets:
        try:
            net = ipaddress.ip_network(sn.cidr, strict=True)
        except ValueError as exc:
            errors.append(f"region {region.name}: subnet {sn.name} invalid cidr {sn.cidr}: {exc}")
            continue

        if net.version != vpc.version or not net.subnet_of(vpc):  # type: ignore[arg-type]
            errors.append(
                f"region {region.name}: subnet {sn.name} {sn.cidr} is outside vpc_cidr {region.vpc_cidr}"
            )

        if sn.availability_zone and sn.availability_zone not in azs:
            errors.append(
                f"region {region.name}: subnet {sn.name} uses undeclared availability zone "
                f"{sn.availability_zone}"
            )

        parsed.append((sn.name, net))

    for i, (name_a, net_a) in enumerate(parsed):
        for name_b, net_b in parsed[i + 1 :]:
            if net_a.version == net_b.version and net_a.overlaps(net_b):  # type: ignore[arg-type]
                errors.append(
                    f"region {region.name}: subnets {name_a} {net_a} and {name_b} {net_b} overlap"
                )


def validate_region(region: Region) -> RegionValidationResult:
    """Validate one merged region. See the module docstring for the rules."""

    errors: List[str] = []
    warnings: List[str] = []
    evidence: Dict[str, object] = {}

    _validate_network(region, errors)

    az_count = len(set(region.availability_zones))
    if region.high_availability and az_count < 2:
        errors.append(
            f"region {region.name}: high availability requires at least 2 availability zones, "
            f"got {az_count}"
        )

    seen: set[str] = set()
    for cluster in region.clusters:
        if cluster.name in seen:
            errors.append(f"region {region.name}: duplicate cluster name {cluster.name}")
        seen.add(cluster.name)

        where = f"{region.name}/{cluster.name}"

        for ng in cluster.node_groups:
            if not (0 <= ng.min_size <= ng.desired_size <= ng.max_size):
                errors.append(
                    f"{where}: node group {ng.name} requires 0 <= min <= desired <= max, got "
                    f"min {ng.min_size} desired {ng.desired_size} max {ng.max_size}"
                )
            if ng.max_size < 1:
                errors.append(f"{where}: node group {ng.name} max_size must be at least 1")
            if ng.kind == NodeGroupKind.spot and not ng.taints:
                warnings.append(f"{where}: spot node group {ng.name} has no taints")

        for fp in cluster.fargate_profiles:
            if not fp.selectors:
                errors.append(f"{where}: fargate profile {fp.name} has no selectors")
            for idx, sel in enumerate(fp.selectors):
                if not sel.namespace.strip():
                    errors.append(f"{where}: fargate profile {fp.name} selector {idx} has empty namespace")

    evidence["counts"] = {
        "availability_zones": az_count,
        "subnets": len(region.subnets),
        "clusters": len(region.clusters),
        "node_groups": sum(len(c.node_groups) for c in region.clusters),
        "fargate_profiles": sum(len(c.fargate_profiles) for c in region.clusters),
    }

    return RegionValidationResult(ok=not errors, errors=errors, warnings=warnings, evidence=evidence)
