"""
Core types.

This file defines the topology model shared across the reconciler.

Important design choice
Topology entities are frozen snapshots. The loader and the collector build
them fresh every cycle, the diff engine consumes them, and nothing mutates
them afterwards.

Provider neutral means:
We describe clusters, node groups and Fargate profiles with plain fields,
not with EKS request shapes. Adapters in the execution package translate.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Union


class NodeGroupKind(StrEnum):
    """
    Capacity purchase model of a node group.

    on_demand
      Stable capacity for system and core workloads.

    spot
      Interruptible capacity for fault tolerant workloads.
    """

    on_demand = "on-demand"
    spot = "spot"


class TaintEffect(StrEnum):
    """Kubernetes taint effects."""

    no_schedule = "NoSchedule"
    prefer_no_schedule = "PreferNoSchedule"
    no_execute = "NoExecute"


class EntityKind(StrEnum):
    cluster = "cluster"
    node_group = "nodegroup"
    fargate_profile = "fargateprofile"


class OperationKind(StrEnum):
    create = "create"
    update = "update"
    delete = "delete"


class ObservationStatus(StrEnum):
    """
    Whether a region could be observed.

    unknown means collection failed. It is never the same as empty.
    """

    known = "known"
    unknown = "unknown"


class ResultStatus(StrEnum):
    applied = "applied"
    skipped = "skipped"
    failed = "failed"


@dataclass(frozen=True)
class Taint:
    key: str
    value: str = ""
    effect: TaintEffect = TaintEffect.no_schedule


@dataclass(frozen=True)
class Subnet:
    """
    A subnet declared for a region.

    Subnets belong to the network stack. We only validate them.
    """

    name: str
    cidr: str
    availability_zone: str = ""


@dataclass(frozen=True)
class NodeGroup:
    """
    A managed node group.

    Invariant: min_size <= desired_size <= max_size.

    node_role_arn and subnet_ids are placement data for the create call.
    The diff engine does not compare them.
    """

    name: str
    kind: NodeGroupKind
    instance_type: str
    min_size: int
    max_size: int
    desired_size: int
    taints: tuple[Taint, ...] = ()
    tags: dict[str, str] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)
    node_role_arn: str = ""
    subnet_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class FargateSelector:
    namespace: str
    labels: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class FargateProfile:
    """
    A Fargate profile.

    Invariant: at least one selector and every selector namespace is non empty.
    """

    name: str
    selectors: tuple[FargateSelector, ...]
    pod_execution_role_arn: str = ""
    subnet_ids: tuple[str, ...] = ()


@dataclass(frozen=True)
class Cluster:
    """
    An EKS cluster and its compute.

    Invariant: name is unique within its region.
    """

    name: str
    region: str
    kubernetes_version: str
    node_groups: tuple[NodeGroup, ...] = ()
    fargate_profiles: tuple[FargateProfile, ...] = ()
    tags: dict[str, str] = field(default_factory=dict)
    role_arn: str = ""
    subnet_ids: tuple[str, ...] = ()

    def node_group(self, name: str) -> NodeGroup | None:
        for ng in self.node_groups:
            if ng.name == name:
                return ng
        return None

    def fargate_profile(self, name: str) -> FargateProfile | None:
        for fp in self.fargate_profiles:
            if fp.name == name:
                return fp
        return None


@dataclass(frozen=True)
class Region:
    """
    Desired state for one region.

    Invariant: high availability regions span at least two availability zones.
    """

    name: str
    vpc_cidr: str
    availability_zones: tuple[str, ...]
    clusters: tuple[Cluster, ...] = ()
    subnets: tuple[Subnet, ...] = ()
    high_availability: bool = True

    def cluster(self, name: str) -> Cluster | None:
        for c in self.clusters:
            if c.name == name:
                return c
        return None


@dataclass(frozen=True)
class Topology:
    """Desired topology, one entry per region."""

    regions: tuple[Region, ...] = ()

    def region(self, name: str) -> Region | None:
        for r in self.regions:
            if r.name == name:
                return r
        return None


@dataclass(frozen=True)
class ObservedRegion:
    """
    Observed state for one region.

    When status is unknown, clusters is empty and error explains why.
    error_kind is collection_error or auth_error.
    """

    name: str
    status: ObservationStatus
    clusters: tuple[Cluster, ...] = ()
    error: str | None = None
    error_kind: str | None = None

    @property
    def known(self) -> bool:
        return self.status == ObservationStatus.known

    def cluster(self, name: str) -> Cluster | None:
        for c in self.clusters:
            if c.name == name:
                return c
        return None


@dataclass(frozen=True)
class ObservedTopology:
    regions: tuple[ObservedRegion, ...] = ()

    def region(self, name: str) -> ObservedRegion | None:
        for r in self.regions:
            if r.name == name:
                return r
        return None


Entity = Union[Cluster, NodeGroup, FargateProfile]


@dataclass(frozen=True)
class Operation:
    """
    A single reconciliation step produced by the diff engine.

    sequence
    Position in the global plan, starting at 1.

    desired
    The target entity for create and update. None for delete.

    changes
    Field names that differ, for update operations.
    """

    sequence: int
    kind: OperationKind
    entity: EntityKind
    region: str
    cluster: str
    name: str
    desired: Entity | None = None
    changes: tuple[str, ...] = ()

    @property
    def target_id(self) -> str:
        if self.entity == EntityKind.cluster:
            return f"{self.region}/{self.cluster}"
        return f"{self.region}/{self.cluster}/{self.entity.value}/{self.name}"

    def __str__(self) -> str:
        label = {
            EntityKind.cluster: "Cluster",
            EntityKind.node_group: "NodeGroup",
            EntityKind.fargate_profile: "FargateProfile",
        }[self.entity]
        return f"{self.kind.value.capitalize()}({label} {self.name})"


@dataclass(frozen=True)
class OperationResult:
    """
    Outcome of one operation.

    reason carries the originating cause for failures and skips.
    attempts counts apply attempts, zero when the operation was never issued.
    """

    operation: Operation
    status: ResultStatus
    reason: str = ""
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status in (ResultStatus.applied, ResultStatus.skipped)


@dataclass(frozen=True)
class RegionReport:
    """
    Per region report.

    results
    One entry per applied operation, empty on dry run.

    planned
    Operations computed for this region. Always filled.

    error
    Region level cause, such as a collection error or partial failure.
    """

    region: str
    results: tuple[OperationResult, ...] = ()
    planned: tuple[Operation, ...] = ()
    error: str | None = None
    error_kind: str | None = None

    @property
    def ok(self) -> bool:
        if self.error is not None:
            return False
        return all(r.ok for r in self.results)

    def failed_clusters(self) -> list[str]:
        return sorted({r.operation.cluster for r in self.results if not r.ok})


@dataclass(frozen=True)
class RunReport:
    regions: tuple[RegionReport, ...]
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.regions)

    @property
    def exit_code(self) -> int:
        return 0 if self.ok else 1

    def region(self, name: str) -> RegionReport | None:
        for r in self.regions:
            if r.region == name:
                return r
        return None
