"""
Layer source interfaces.

Goal
Provide pluggable ingestion of layered desired state fragments.

A source returns one RegionLayers per requested region. The loader merges
them in the fixed order defaults, environment, region, cluster specific.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import yaml

from topology_reconciler.core.errors import ConfigError

DOCUMENT_SUFFIXES = (".yaml", ".yml", ".json")


@dataclass(frozen=True)
class RegionLayers:
    """
    Raw layered fragments for one region.

    clusters maps cluster name to its cluster specific fragment.
    """

    region: str
    defaults: dict[str, Any] = field(default_factory=dict)
    environment: dict[str, Any] = field(default_factory=dict)
    region_overlay: dict[str, Any] = field(default_factory=dict)
    clusters: dict[str, dict[str, Any]] = field(default_factory=dict)


class LayerSource(Protocol):
    """
    Layer source interface.

    fetch returns RegionLayers keyed by region name for every requested region.
    A region without any region specific fragment still gets the shared layers.
    """

    def fetch(self, regions: list[str]) -> dict[str, RegionLayers]:
        """Fetch layered fragments."""


def read_document(path: Path) -> dict[str, Any]:
    """
    Read one YAML or JSON document.

    An empty document is an empty layer.
    Anything that is not a mapping is a ConfigError.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read {path}: {exc}") from exc

    try:
        if path.suffix == ".json":
            data = json.loads(text) if text.strip() else None
        else:
            data = yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(f"cannot parse {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


def find_document(directory: Path, stem: str) -> Path | None:
    """Return the first existing document named stem with a supported suffix."""
    for suffix in DOCUMENT_SUFFIXES:
        candidate = directory / f"{stem}{suffix}"
        if candidate.is_file():
            return candidate
    return None
