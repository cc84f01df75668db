"""
Diff engine.

Purpose
Compare desired and observed topology entity by entity and produce the
ordered list of Operations that reconciles them.

Why a pure function
Plans that touch live clusters must be stable, auditable and repeatable.
The same desired and observed pair always yields the same operations, with
the same sequence numbers.

Identity
Entities are keyed by region, cluster, and node group or profile name.

Ordering
1  creates, then updates, then deletes, across the whole plan
2  creates and updates go cluster, node groups, Fargate profiles
   so capacity exists before workloads are placed on Fargate
3  deletes go Fargate profiles, node groups, clusters
4  ties are broken by region, cluster and entity name

Unknown regions
A region whose observed state is unknown gets no delete and no update.
Only creates are planned there, and those are create if absent on apply.
Regions that are not part of the desired topology are left alone.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from topology_reconciler.core.types import (
    Cluster,
    Entity,
    EntityKind,
    FargateProfile,
    NodeGroup,
    ObservedTopology,
    Operation,
    OperationKind,
    Topology,
)

_PHASE = {
    OperationKind.create: 0,
    OperationKind.update: 1,
    OperationKind.delete: 2,
}

_FORWARD_TIER = {
    EntityKind.cluster: 0,
    EntityKind.node_group: 1,
    EntityKind.fargate_profile: 2,
}

_REVERSE_TIER = {
    EntityKind.fargate_profile: 0,
    EntityKind.node_group: 1,
    EntityKind.cluster: 2,
}


def _selector_key(profile: FargateProfile) -> list[tuple[str, list[tuple[str, str]]]]:
    return sorted((s.namespace, sorted(s.labels.items())) for s in profile.selectors)


def cluster_changes(desired: Cluster, observed: Cluster) -> tuple[str, ...]:
    """Return compared cluster fields that differ."""
    changes: list[str] = []
    if desired.kubernetes_version != observed.kubernetes_version:
        changes.append("kubernetes_version")
    if desired.tags != observed.tags:
        changes.append("tags")
    return tuple(changes)


def node_group_changes(desired: NodeGroup, observed: NodeGroup) -> tuple[str, ...]:
    """Return compared node group fields that differ. Taint order is ignored."""
    changes: list[str] = []
    for name in ("kind", "instance_type", "min_size", "max_size", "desired_size"):
        if getattr(desired, name) != getattr(observed, name):
            changes.append(name)
    if set(desired.taints) != set(observed.taints):
        changes.append("taints")
    if desired.tags != observed.tags:
        changes.append("tags")
    if desired.labels != observed.labels:
        changes.append("labels")
    return tuple(changes)


def fargate_profile_changes(desired: FargateProfile, observed: FargateProfile) -> tuple[str, ...]:
    """Return compared profile fields that differ. Selector order is ignored."""
    if _selector_key(desired) != _selector_key(observed):
        return ("selectors",)
    return ()


def entity_changes(desired: Entity, observed: Entity) -> tuple[str, ...]:
    """Dispatch to the comparison for the entity type."""
    if isinstance(desired, Cluster) and isinstance(observed, Cluster):
        return cluster_changes(desired, observed)
    if isinstance(desired, NodeGroup) and isinstance(observed, NodeGroup):
        return node_group_changes(desired, observed)
    if isinstance(desired, FargateProfile) and isinstance(observed, FargateProfile):
        return fargate_profile_changes(desired, observed)
    raise TypeError(f"cannot compare {type(desired).__name__} with {type(observed).__name__}")


@dataclass(frozen=True)
class _Draft:
    kind: OperationKind
    entity: EntityKind
    region: str
    cluster: str
    name: str
    desired: Entity | None = None
    changes: tuple[str, ...] = ()

    def sort_key(self) -> tuple[Any, ...]:
        tiers = _REVERSE_TIER if self.kind == OperationKind.delete else _FORWARD_TIER
        return (_PHASE[self.kind], tiers[self.entity], self.region, self.cluster, self.name)


def _diff_children(
    region: str,
    desired: Cluster,
    observed: Cluster | None,
    drafts: list[_Draft],
) -> None:
    observed_groups = {ng.name: ng for ng in observed.node_groups} if observed else {}
    observed_profiles = {fp.name: fp for fp in observed.fargate_profiles} if observed else {}

    for ng in desired.node_groups:
        current = observed_groups.get(ng.name)
        if current is None:
            drafts.append(_Draft(OperationKind.create, EntityKind.node_group, region, desired.name, ng.name, ng))
            continue
        changes = node_group_changes(ng, current)
        if changes:
            drafts.append(
                _Draft(OperationKind.update, EntityKind.node_group, region, desired.name, ng.name, ng, changes)
            )

    for fp in desired.fargate_profiles:
        current_fp = observed_profiles.get(fp.name)
        if current_fp is None:
            drafts.append(
                _Draft(OperationKind.create, EntityKind.fargate_profile, region, desired.name, fp.name, fp)
            )
            continue
        changes = fargate_profile_changes(fp, current_fp)
        if changes:
            drafts.append(
                _Draft(OperationKind.update, EntityKind.fargate_profile, region, desired.name, fp.name, fp, changes)
            )

    desired_groups = {ng.name for ng in desired.node_groups}
    desired_profiles = {fp.name for fp in desired.fargate_profiles}

    for name in observed_groups:
        if name not in desired_groups:
            drafts.append(_Draft(OperationKind.delete, EntityKind.node_group, region, desired.name, name))

    for name in observed_profiles:
        if name not in desired_profiles:
            drafts.append(_Draft(OperationKind.delete, EntityKind.fargate_profile, region, desired.name, name))


def _delete_cluster(region: str, observed: Cluster, drafts: list[_Draft]) -> None:
    for fp in observed.fargate_profiles:
        drafts.append(_Draft(OperationKind.delete, EntityKind.fargate_profile, region, observed.name, fp.name))
    for ng in observed.node_groups:
        drafts.append(_Draft(OperationKind.delete, EntityKind.node_group, region, observed.name, ng.name))
    drafts.append(_Draft(OperationKind.delete, EntityKind.cluster, region, observed.name, observed.name))


def plan_operations(desired: Topology, observed: ObservedTopology) -> list[Operation]:
    """
    Compute the ordered operations that move observed toward desired.

    This function has no side effects.
    """
    drafts: list[_Draft] = []

    for d_region in desired.regions:
        o_region = observed.region(d_region.name)
        known = o_region is not None and o_region.known

        observed_clusters = {c.name: c for c in o_region.clusters} if known and o_region else {}

        for cluster in d_region.clusters:
            current = observed_clusters.get(cluster.name)

            if current is None:
                drafts.append(
                    _Draft(OperationKind.create, EntityKind.cluster, d_region.name, cluster.name, cluster.name, cluster)
                )
                _diff_children(d_region.name, cluster, None, drafts)
                continue

            changes = cluster_changes(cluster, current)
            if changes:
                drafts.append(
                    _Draft(
                        OperationKind.update,
                        EntityKind.cluster,
                        d_region.name,
                        cluster.name,
                        cluster.name,
                        cluster,
                        changes,
                    )
                )
            _diff_children(d_region.name, cluster, current, drafts)

        desired_names = {c.name for c in d_region.clusters}
        for name, current in observed_clusters.items():
            if name not in desired_names:
                _delete_cluster(d_region.name, current, drafts)

    drafts.sort(key=lambda d: d.sort_key())

    return [
        Operation(
            sequence=idx,
            kind=d.kind,
            entity=d.entity,
            region=d.region,
            cluster=d.cluster,
            name=d.name,
            desired=d.desired,
            changes=d.changes,
        )
        for idx, d in enumerate(drafts, start=1)
    ]


def operations_for_region(operations: list[Operation], region: str) -> list[Operation]:
    """Filter a plan to one region, keeping plan order."""
    return [op for op in operations if op.region == region]
