"""
Merge Patches - JSON merge patch (RFC 7386) creation and application.

Provides the three-way merge patch used by the legacy ordered Secrets path:
given the last-applied snapshot, the freshly computed desired object and the
live object, build a patch that converges the fields we manage while leaving
fields changed by someone else alone.
"""

import copy
import json
from typing import Any, Dict, Optional, Union

PatchInput = Optional[Union[str, bytes, Dict[str, Any]]]


class MergePatchError(Exception):
    """Raised when a merge patch input cannot be interpreted."""


def _as_dict(value: PatchInput, label: str) -> Dict[str, Any]:
    """Decode a patch input into a dict; empty input means ``{}``."""
    if value is None or value == "" or value == b"":
        return {}
    if isinstance(value, (str, bytes)):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            raise MergePatchError(f"{label} is not valid JSON: {e}")
    if not isinstance(value, dict):
        raise MergePatchError(f"{label} must be a JSON object")
    return value


def _diff(
    source: Dict[str, Any], target: Dict[str, Any], ignore_deletions: bool
) -> Dict[str, Any]:
    patch: Dict[str, Any] = {}

    for key, target_value in target.items():
        if key not in source:
            patch[key] = copy.deepcopy(target_value)
            continue
        source_value = source[key]
        if isinstance(source_value, dict) and isinstance(target_value, dict):
            nested = _diff(source_value, target_value, ignore_deletions)
            if nested:
                patch[key] = nested
        elif source_value != target_value:
            patch[key] = copy.deepcopy(target_value)

    if not ignore_deletions:
        for key in source:
            if key not in target:
                patch[key] = None

    return patch


def _keep_deletions(patch: Dict[str, Any]) -> Dict[str, Any]:
    deletions: Dict[str, Any] = {}
    for key, value in patch.items():
        if value is None:
            deletions[key] = None
        elif isinstance(value, dict):
            nested = _keep_deletions(value)
            if nested:
                deletions[key] = nested
    return deletions


def _merge_patches(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge_patches(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def create_merge_patch(
    original: PatchInput, modified: PatchInput
) -> Dict[str, Any]:
    """
    Create a two-way merge patch that turns ``original`` into ``modified``.

    Keys missing from ``modified`` are set to ``None`` (JSON ``null``).
    Lists are replaced as a whole.

    Args:
        original: Object before the change
        modified: Object after the change

    Returns:
        The merge patch; empty when the objects are equal.
    """
    return _diff(
        _as_dict(original, "original"),
        _as_dict(modified, "modified"),
        ignore_deletions=False,
    )


def create_three_way_merge_patch(
    original: PatchInput, modified: PatchInput, current: PatchInput
) -> Dict[str, Any]:
    """
    Create a three-way merge patch.

    Deletions are computed between ``original`` (the last-applied snapshot)
    and ``modified``: only fields we previously set and no longer want are
    removed. Additions and changes are computed between ``current`` and
    ``modified``, ignoring deletions, so fields present only in ``current``
    (written by another actor) survive.

    Args:
        original: Last-applied snapshot; empty or missing means ``{}``
        modified: Freshly computed desired object
        current: Live object as observed

    Returns:
        A merge patch to apply to ``current``; empty when nothing changes.

    Raises:
        MergePatchError: If an input is not a JSON object.
    """
    original_map = _as_dict(original, "original")
    modified_map = _as_dict(modified, "modified")
    current_map = _as_dict(current, "current")

    delta = _diff(current_map, modified_map, ignore_deletions=True)
    deletions = _keep_deletions(_diff(original_map, modified_map, ignore_deletions=False))

    return _merge_patches(deletions, delta)


def apply_merge_patch(target: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    """
    Apply a merge patch (RFC 7386) and return the result.

    The target is not modified.
    """
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)

    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        elif isinstance(value, dict):
            result[key] = apply_merge_patch(result.get(key, {}), value)
        else:
            result[key] = copy.deepcopy(value)
    return result
