"""
Stacks directory layer source.

Reads layered fragments from a local stacks directory, one file per layer.

Layout
defaults.yaml
environments/<environment>.yaml
regions/<region>.yaml
clusters/<region>/<cluster>.yaml

Each file may be .yaml, .yml or .json. Missing files are empty layers, so a
repository can start with a single region file and grow into the layout.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from topology_reconciler.core.errors import ConfigError
from topology_reconciler.desired.base import (
    DOCUMENT_SUFFIXES,
    LayerSource,
    RegionLayers,
    find_document,
    read_document,
)

logger = logging.getLogger(__name__)


def _optional_document(directory: Path, stem: str) -> dict[str, Any]:
    path = find_document(directory, stem)
    if path is None:
        return {}
    logger.debug("loaded layer %s", path)
    return read_document(path)


@dataclass(frozen=True)
class DirectoryLayerSource(LayerSource):
    """Load layers from an Atmos style stacks directory."""

    root: Path
    environment: str = ""

    def fetch(self, regions: list[str]) -> dict[str, RegionLayers]:
        if not self.root.is_dir():
            raise ConfigError(f"stacks directory does not exist: {self.root}")

        defaults = _optional_document(self.root, "defaults")

        env_layer: dict[str, Any] = {}
        if self.environment:
            env_dir = self.root / "environments"
            if find_document(env_dir, self.environment) is None:
                raise ConfigError(f"no environment file for {self.environment} in {env_dir}")
            env_layer = _optional_document(env_dir, self.environment)

        out: dict[str, RegionLayers] = {}
        for region in regions:
            overlay = _optional_document(self.root / "regions", region)

            clusters: dict[str, dict[str, Any]] = {}
            cluster_dir = self.root / "clusters" / region
            if cluster_dir.is_dir():
                for p in sorted(cluster_dir.iterdir()):
                    if p.is_file() and p.suffix in DOCUMENT_SUFFIXES:
                        if p.stem in clusters:
                            raise ConfigError(f"duplicate cluster file for {region}/{p.stem}")
                        clusters[p.stem] = read_document(p)

            out[region] = RegionLayers(
                region=region,
                defaults=defaults,
                environment=env_layer,
                region_overlay=overlay,
                clusters=clusters,
            )

        return out
