"""
Layer merge.

Layering order is explicit and fixed:
global defaults, then environment, then region, then cluster specific.

Merge policy
Scalars from later layers override earlier ones.
Mappings merge recursively, so tags, labels, node groups and Fargate
profiles keyed by name are unioned.
Keyed lists are unioned by their identity field, later layers win on
collision. Any other list is replaced as a whole.
A null value in a later layer leaves the earlier value in place.
"""

from __future__ import annotations

import copy
from typing import Any, Mapping

from topology_reconciler.core.errors import ConfigError

KEYED_LISTS: dict[str, str] = {
    "taints": "key",
    "selectors": "namespace",
}


def _union_by_key(field_name: str, base: list[Any], overlay: list[Any]) -> list[Any]:
    id_field = KEYED_LISTS[field_name]
    merged: dict[str, Any] = {}

    for idx, item in enumerate(list(base) + list(overlay)):
        if not isinstance(item, Mapping) or not item.get(id_field):
            raise ConfigError(f"{field_name} entry {idx} must be a mapping with a {id_field} field")
        key = str(item[id_field])
        if key in merged:
            merged[key] = deep_merge(merged[key], item)
        else:
            merged[key] = copy.deepcopy(dict(item))

    return list(merged.values())


def deep_merge(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    """
    Merge overlay onto base and return a new dict.

    Neither input is modified.
    """
    result: dict[str, Any] = copy.deepcopy(dict(base))

    for key, value in overlay.items():
        if value is None:
            continue

        current = result.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            result[key] = deep_merge(current, value)
        elif key in KEYED_LISTS and isinstance(current, list) and isinstance(value, list):
            result[key] = _union_by_key(key, current, value)
        else:
            result[key] = copy.deepcopy(value)

    return result


def merge_layers(*layers: Mapping[str, Any] | None) -> dict[str, Any]:
    """Merge layers left to right. Missing layers count as empty."""
    merged: dict[str, Any] = {}
    for layer in layers:
        if not layer:
            continue
        if not isinstance(layer, Mapping):
            raise ConfigError(f"configuration layer must be a mapping, got {type(layer).__name__}")
        merged = deep_merge(merged, layer)
    return merged
