"""
Static layer source.

Reads a single local YAML or JSON document that contains every layer.

Schema example
{
  "defaults": {"cluster_defaults": {"kubernetes_version": "1.29"}},
  "environments": {"prod": {"high_availability": true}},
  "regions": {
    "us-east-1": {
      "vpc_cidr": "10.0.0.0/16",
      "availability_zones": ["us-east-1a", "us-east-1b"],
      "clusters": {"main": {}}
    }
  },
  "clusters": {"us-east-1": {"main": {"tags": {"tier": "core"}}}}
}
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from topology_reconciler.core.errors import ConfigError
from topology_reconciler.desired.base import LayerSource, RegionLayers, read_document


def _section(data: dict[str, Any], key: str, where: str) -> dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"{where}: {key} must be a mapping")
    return value


def layers_from_document(
    data: dict[str, Any],
    regions: list[str],
    environment: str = "",
    where: str = "document",
) -> dict[str, RegionLayers]:
    """Split one document into RegionLayers for the requested regions."""
    defaults = _section(data, "defaults", where)
    environments = _section(data, "environments", where)
    region_overlays = _section(data, "regions", where)
    cluster_layers = _section(data, "clusters", where)

    env_layer: dict[str, Any] = {}
    if environment:
        if environment not in environments:
            raise ConfigError(f"{where}: no environment named {environment} under environments")
        env_layer = environments[environment] or {}
        if not isinstance(env_layer, dict):
            raise ConfigError(f"{where}: environments.{environment} must be a mapping")

    out: dict[str, RegionLayers] = {}
    for region in regions:
        overlay = region_overlays.get(region) or {}
        clusters = cluster_layers.get(region) or {}
        if not isinstance(overlay, dict):
            raise ConfigError(f"{where}: regions.{region} must be a mapping")
        if not isinstance(clusters, dict):
            raise ConfigError(f"{where}: clusters.{region} must be a mapping")

        out[region] = RegionLayers(
            region=region,
            defaults=defaults,
            environment=env_layer,
            region_overlay=overlay,
            clusters={str(k): (v or {}) for k, v in clusters.items()},
        )

    return out


@dataclass(frozen=True)
class StaticLayerSource(LayerSource):
    """Load every layer from one local document."""

    path: Path
    environment: str = ""

    def fetch(self, regions: list[str]) -> dict[str, RegionLayers]:
        data = read_document(self.path)
        return layers_from_document(data, regions, self.environment, where=str(self.path))
