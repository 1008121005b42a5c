"""Small pure helpers shared by the reconcilers."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import Any, TypeVar

T = TypeVar("T")


def diff_string_map(
    desired: Mapping[str, str],
    current: Mapping[str, str],
    ignored_keys: Iterable[str] = (),
) -> tuple[dict[str, str], dict[str, str]]:
    """Compute the changes needed to turn ``current`` into ``desired``.

    Ignored keys are removed from both sides before comparing, so they are
    never added, updated or removed.

    Args:
        desired: Desired key/value pairs.
        current: Current key/value pairs.
        ignored_keys: Keys excluded from the comparison.

    Returns:
        Tuple of (keys to add or update with their desired value,
        keys to remove with their current value).
    """
    ignored = set(ignored_keys)
    to_update = {
        key: value
        for key, value in desired.items()
        if key not in ignored and current.get(key) != value
    }
    to_remove = {
        key: value
        for key, value in current.items()
        if key not in ignored and key not in desired
    }
    return to_update, to_remove


def chunk(items: Sequence[T], size: int) -> list[list[T]]:
    """Split a sequence into consecutive chunks of at most ``size`` items."""
    if size < 1:
        raise ValueError(f"chunk size must be positive: {size}")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


def merge_string_maps(*maps: Mapping[str, str] | None) -> dict[str, str]:
    """Merge maps left to right; later maps win on key conflicts."""
    merged: dict[str, str] = {}
    for m in maps:
        if m:
            merged.update(m)
    return merged


def same_string_set(left: Iterable[str] | None, right: Iterable[str] | None) -> bool:
    return set(left or ()) == set(right or ())


def compact(value: Any) -> Any:
    """Drop ``None`` values and empty containers from nested request payloads."""
    if isinstance(value, dict):
        result = {}
        for key, item in value.items():
            item = compact(item)
            if item is None or item == {} or item == []:
                continue
            result[key] = item
        return result
    if isinstance(value, list):
        return [compact(item) for item in value]
    return value
