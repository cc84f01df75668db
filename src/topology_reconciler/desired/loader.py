"""
Desired state loader.

Purpose
Turn layered fragments into a fully merged, validated Topology before any
control plane call is made.

Input shape expectations
A merged region fragment looks like:

  region: us-east-1
  vpc_cidr: 10.0.0.0/16
  availability_zones: [us-east-1a, us-east-1b]
  high_availability: true
  subnets: {private-a: {cidr: 10.0.0.0/19, availability_zone: us-east-1a}}
  cluster_defaults: {kubernetes_version: "1.29"}
  clusters: {main: {node_groups: {...}, fargate_profiles: {...}}}

Every cluster is merged as cluster_defaults, then clusters.<name> from the
region fragment, then the cluster specific layer.

Any missing or malformed field raises ConfigError naming where it was found.
Output is deterministic: regions, clusters, node groups, taints and
selectors are sorted.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Mapping

from topology_reconciler.core.errors import ConfigError
from topology_reconciler.core.types import (
    Cluster,
    FargateProfile,
    FargateSelector,
    NodeGroup,
    NodeGroupKind,
    Region,
    Subnet,
    Taint,
    TaintEffect,
    Topology,
)
from topology_reconciler.desired.base import LayerSource, RegionLayers
from topology_reconciler.desired.merge import merge_layers
from topology_reconciler.desired.validation import validate_region

logger = logging.getLogger(__name__)


def _require_str(obj: Mapping[str, Any], key: str, where: str) -> str:
    value = obj.get(key)
    if value is None or value == "":
        raise ConfigError(f"{where}: missing required field {key}")
    if not isinstance(value, str):
        raise ConfigError(f"{where}: {key} must be a string, got {type(value).__name__}")
    return value


def _optional_str(obj: Mapping[str, Any], key: str, where: str, default: str = "") -> str:
    value = obj.get(key, default)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ConfigError(f"{where}: {key} must be a string, got {type(value).__name__}")
    return value


def _int(obj: Mapping[str, Any], key: str, where: str, default: int | None = None) -> int:
    value = obj.get(key, default)
    if value is None:
        raise ConfigError(f"{where}: missing required field {key}")
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{where}: {key} must be an integer")
    return value


def _str_list(obj: Mapping[str, Any], key: str, where: str) -> tuple[str, ...]:
    value = obj.get(key) or []
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{where}: {key} must be a list of strings")
    return tuple(value)


def _str_map(obj: Mapping[str, Any], key: str, where: str) -> dict[str, str]:
    value = obj.get(key) or {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{where}: {key} must be a mapping")
    return {str(k): "" if v is None else str(v) for k, v in sorted(value.items(), key=lambda kv: str(kv[0]))}


def _mapping(obj: Mapping[str, Any], key: str, where: str) -> Mapping[str, Any]:
    value = obj.get(key) or {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"{where}: {key} must be a mapping")
    return value


def _taints_from_list(raw: Any, where: str) -> tuple[Taint, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ConfigError(f"{where}: taints must be a list")

    by_key: dict[str, Taint] = {}
    for idx, item in enumerate(raw):
        if not isinstance(item, Mapping):
            raise ConfigError(f"{where}: taints item {idx} must be a mapping")
        key = _require_str(item, "key", f"{where}.taints[{idx}]")
        effect_raw = _optional_str(item, "effect", f"{where}.taints[{idx}]", TaintEffect.no_schedule.value)
        try:
            effect = TaintEffect(effect_raw)
        except ValueError as exc:
            raise ConfigError(f"{where}.taints[{idx}]: unknown taint effect {effect_raw}") from exc
        by_key[key] = Taint(key=key, value=_optional_str(item, "value", where), effect=effect)

    return tuple(by_key[k] for k in sorted(by_key))


def _node_group_from_dict(name: str, obj: Mapping[str, Any], cluster_subnets: tuple[str, ...], where: str) -> NodeGroup:
    where = f"{where}.node_groups.{name}"
    if not isinstance(obj, Mapping):
        raise ConfigError(f"{where}: must be a mapping")

    kind_raw = _optional_str(obj, "kind", where, NodeGroupKind.on_demand.value)
    try:
        kind = NodeGroupKind(kind_raw)
    except ValueError as exc:
        raise ConfigError(f"{where}: unknown node group kind {kind_raw}") from exc

    min_size = _int(obj, "min_size", where)
    max_size = _int(obj, "max_size", where)
    desired_size = _int(obj, "desired_size", where, default=min_size)

    return NodeGroup(
        name=name,
        kind=kind,
        instance_type=_require_str(obj, "instance_type", where),
        min_size=min_size,
        max_size=max_size,
        desired_size=desired_size,
        taints=_taints_from_list(obj.get("taints"), where),
        tags=_str_map(obj, "tags", where),
        labels=_str_map(obj, "labels", where),
        node_role_arn=_optional_str(obj, "node_role_arn", where),
        subnet_ids=_str_list(obj, "subnet_ids", where) or cluster_subnets,
    )


def _fargate_profile_from_dict(
    name: str,
    obj: Mapping[str, Any],
    cluster_subnets: tuple[str, ...],
    where: str,
) -> FargateProfile:
    where = f"{where}.fargate_profiles.{name}"
    if not isinstance(obj, Mapping):
        raise ConfigError(f"{where}: must be a mapping")

    raw = obj.get("selectors") or []
    if not isinstance(raw, list):
        raise ConfigError(f"{where}: selectors must be a list")

    selectors: list[FargateSelector] = []
    for idx, item in enumerate(raw):
        if not isinstance(item, Mapping):
            raise ConfigError(f"{where}: selectors item {idx} must be a mapping")
        selectors.append(
            FargateSelector(
                namespace=_optional_str(item, "namespace", f"{where}.selectors[{idx}]"),
                labels=_str_map(item, "labels", f"{where}.selectors[{idx}]"),
            )
        )

    return FargateProfile(
        name=name,
        selectors=tuple(sorted(selectors, key=lambda s: s.namespace)),
        pod_execution_role_arn=_optional_str(obj, "pod_execution_role_arn", where),
        subnet_ids=_str_list(obj, "subnet_ids", where) or cluster_subnets,
    )


def _cluster_from_dict(key: str, obj: Mapping[str, Any], region: str, where: str) -> Cluster:
    name = obj.get("name", key)
    if not isinstance(name, str) or not name:
        raise ConfigError(f"{where}.clusters.{key}: missing required field name")

    where = f"{where}.clusters.{name}"
    version = obj.get("kubernetes_version")
    if isinstance(version, (int, float)) and not isinstance(version, bool):
        raise ConfigError(f"{where}: kubernetes_version must be a quoted string, got {version!r}")

    subnet_ids = _str_list(obj, "subnet_ids", where)

    node_groups = [
        _node_group_from_dict(str(ng_name), ng_obj, subnet_ids, where)
        for ng_name, ng_obj in _mapping(obj, "node_groups", where).items()
    ]
    fargate_profiles = [
        _fargate_profile_from_dict(str(fp_name), fp_obj, subnet_ids, where)
        for fp_name, fp_obj in _mapping(obj, "fargate_profiles", where).items()
    ]

    return Cluster(
        name=name,
        region=region,
        kubernetes_version=_require_str(obj, "kubernetes_version", where),
        node_groups=tuple(sorted(node_groups, key=lambda ng: ng.name)),
        fargate_profiles=tuple(sorted(fargate_profiles, key=lambda fp: fp.name)),
        tags=_str_map(obj, "tags", where),
        role_arn=_optional_str(obj, "role_arn", where),
        subnet_ids=subnet_ids,
    )


def _subnets_from_dict(obj: Mapping[str, Any], where: str) -> tuple[Subnet, ...]:
    subnets: list[Subnet] = []
    for name, raw in sorted(_mapping(obj, "subnets", where).items(), key=lambda kv: str(kv[0])):
        sw = f"{where}.subnets.{name}"
        if not isinstance(raw, Mapping):
            raise ConfigError(f"{sw}: must be a mapping")
        subnets.append(
            Subnet(
                name=str(name),
                cidr=_require_str(raw, "cidr", sw),
                availability_zone=_optional_str(raw, "availability_zone", sw),
            )
        )
    return tuple(subnets)


def merge_region(layers: RegionLayers) -> dict[str, Any]:
    """
    Merge the layers of one region into a single fragment.

    The cluster specific layer is folded into clusters.<name>, and
    cluster_defaults is folded under every cluster.
    """
    merged = merge_layers(layers.defaults, layers.environment, layers.region_overlay)

    declared = _mapping(merged, "clusters", layers.region)
    cluster_defaults = _mapping(merged, "cluster_defaults", layers.region)

    clusters: dict[str, Any] = {}
    for name in sorted(set(map(str, declared)) | set(layers.clusters)):
        clusters[name] = merge_layers(cluster_defaults, declared.get(name), layers.clusters.get(name))

    merged["clusters"] = clusters
    merged.pop("cluster_defaults", None)
    return merged


def region_from_fragment(region_name: str, merged: Mapping[str, Any]) -> Region:
    """Build a Region from a merged fragment. Raises ConfigError on bad fields."""
    where = region_name
    declared_region = merged.get("region", region_name)
    if not declared_region:
        raise ConfigError(f"{where}: missing required field region")
    if declared_region != region_name:
        raise ConfigError(f"{where}: fragment declares region {declared_region}")

    high_availability = merged.get("high_availability", True)
    if not isinstance(high_availability, bool):
        raise ConfigError(f"{where}: high_availability must be a boolean")

    clusters = [
        _cluster_from_dict(key, obj, region_name, where)
        for key, obj in _mapping(merged, "clusters", where).items()
    ]

    return Region(
        name=region_name,
        vpc_cidr=_require_str(merged, "vpc_cidr", where),
        availability_zones=tuple(sorted(set(_str_list(merged, "availability_zones", where)))),
        clusters=tuple(sorted(clusters, key=lambda c: c.name)),
        subnets=_subnets_from_dict(merged, where),
        high_availability=high_availability,
    )


def with_managed_tag(region: Region, key: str) -> Region:
    clusters = tuple(
        c if key in c.tags else replace(c, tags={**c.tags, key: "true"}) for c in region.clusters
    )
    return replace(region, clusters=clusters)


class DesiredStateLoader:
    """
    Build the desired Topology.

    source
    Optional LayerSource used by load. load_layers works without one.

    managed_tag_key
    When set, every desired cluster carries this tag so the collector, which
    skips clusters without it, still sees the clusters this system created.
    A value declared in the layers is kept, otherwise the value is "true".
    """

    def __init__(self, source: LayerSource | None = None, managed_tag_key: str | None = None) -> None:
        self._source = source
        self._managed_tag_key = managed_tag_key

    def load(self, regions: list[str]) -> Topology:
        """Fetch layers for regions from the source, then merge and validate."""
        if self._source is None:
            raise ConfigError("no layer source configured")
        return self.load_layers(self._source.fetch(regions))

    def load_layers(self, layers: Mapping[str, RegionLayers]) -> Topology:
        """
        Merge and validate layered fragments.

        All region errors are collected and raised together as one ConfigError.
        """
        regions: list[Region] = []
        errors: list[str] = []

        for region_name in sorted(layers):
            region = region_from_fragment(region_name, merge_region(layers[region_name]))
            if self._managed_tag_key:
                region = with_managed_tag(region, self._managed_tag_key)

            result = validate_region(region)
            for warning in result.warnings:
                logger.warning("desired state warning: %s", warning)
            errors.extend(result.errors)

            logger.debug("merged region %s: %s", region_name, result.evidence)
            regions.append(region)

        if errors:
            raise ConfigError("invalid desired state:\n  " + "\n  ".join(errors))

        return Topology(regions=tuple(regions))
