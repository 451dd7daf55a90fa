"""Additive merging of transaction metadata."""
import copy
from typing import Any, Dict, Mapping, Optional


def merge_metadata(
    existing: Optional[Mapping[str, Any]], patch: Optional[Mapping[str, Any]]
) -> Dict[str, Any]:
    """
    Merge ``patch`` into ``existing`` and return a new dict.

    Nested dicts are merged recursively, lists are concatenated so evidence
    and history entries accumulate, and any other value in the patch
    replaces the existing one. Neither input is mutated.

    Args:
        existing: Current metadata (may be None)
        patch: Metadata to merge in (may be None)

    Returns:
        Dict[str, Any]: Merged metadata
    """
    merged: Dict[str, Any] = copy.deepcopy(dict(existing or {}))
    for key, value in (patch or {}).items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, Mapping):
            merged[key] = merge_metadata(current, value)
        elif isinstance(current, list) and isinstance(value, list):
            merged[key] = current + copy.deepcopy(value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged
