"""Utility helpers for merging partial lead-state updates."""
from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Set

LOGGER = logging.getLogger(__name__)


def _is_object(value: Any) -> bool:
    return isinstance(value, Mapping)


def deep_merge(
    target: Mapping[str, Any],
    source: Mapping[str, Any],
    max_depth: int = 3,
    _depth: int = 0,
    _visited: Optional[Set[int]] = None,
) -> Dict[str, Any]:
    """Recursively merge ``source`` into a copy of ``target``.

    Per key of ``source``:

    * ``None`` replaces the target value (explicit clearing; an absent key
      leaves the target untouched).
    * lists replace, they are never merged element-wise.
    * mappings recurse when the target value is also a mapping, otherwise
      they replace wholesale.
    * anything else replaces.

    At ``max_depth`` the level degrades to a shallow update. A mapping that is
    already on the current recursion path is ignored and ``target`` is
    returned for that node, so cyclic input terminates.
    """

    if _depth >= max_depth:
        LOGGER.debug("Max merge depth %s reached, using shallow merge", max_depth)
        merged = dict(target)
        merged.update(source)
        return merged

    visited = _visited if _visited is not None else set()
    marker = id(source)
    if marker in visited:
        LOGGER.warning("Circular reference detected at merge depth %s, skipping", _depth)
        return dict(target)
    visited.add(marker)

    try:
        result = dict(target)
        for key, value in source.items():
            if value is None or isinstance(value, list):
                result[key] = value
            elif _is_object(value):
                current = target.get(key)
                if _is_object(current):
                    result[key] = deep_merge(current, value, max_depth, _depth + 1, visited)
                else:
                    result[key] = value
            else:
                result[key] = value
        return result
    finally:
        visited.discard(marker)


def shallow_merge_objects(target: Mapping[str, Any], updates: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge ``updates`` one level deep: mapping values are spread over the
    existing mapping, everything else replaces."""

    result = dict(target)
    for key, value in updates.items():
        if _is_object(value):
            existing = result.get(key)
            merged = dict(existing) if _is_object(existing) else {}
            merged.update(value)
            result[key] = merged
        else:
            result[key] = value
    return result


__all__ = ["deep_merge", "shallow_merge_objects"]
