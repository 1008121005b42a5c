"""Identity matching between desired and live resources.

Two strategies coexist:

TAG-BASED: live resources carry a tracking tag whose value is the logical
ID of the desired resource that created them. A live resource without the
tag is never adopted or deleted; the whole match fails instead.

STRUCTURAL: children that are not individually tracked (listeners) are
matched by an immutable key shared by both sides, such as the port under a
known load balancer.

Both strategies return a MatchResult that partitions the inputs: every
desired resource and every live resource lands in exactly one bucket.
Buckets are ordered by key so that results are deterministic.
"""

from __future__ import annotations

from collections.abc import Callable, Hashable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Generic, TypeVar

from .errors import DuplicateKeyError, IdentityViolationError

D = TypeVar("D")
L = TypeVar("L")
K = TypeVar("K", bound=Hashable)


@dataclass
class MatchResult(Generic[D, L]):
    """Partition of desired and live resources."""

    pairs: list[tuple[D, L]] = field(default_factory=list)
    desired_only: list[D] = field(default_factory=list)
    live_only: list[L] = field(default_factory=list)


def _never_replace(desired: object, live: object) -> bool:
    return False


def match_by_tag(
    desired: Sequence[D],
    live: Sequence[L],
    resource_id_tag_key: str,
    *,
    desired_id: Callable[[D], str],
    live_tags: Callable[[L], Mapping[str, str]],
    live_arn: Callable[[L], str],
    requires_replacement: Callable[[D, L], bool] = _never_replace,
) -> MatchResult[D, L]:
    """Match desired and live resources by the tracking tag.

    A live resource that needs replacement is put in ``live_only``; if no
    live resource sharing the ID is compatible, the desired resource is put
    in ``desired_only`` so it gets recreated.

    Raises:
        IdentityViolationError: If a live resource lacks the tracking tag.
    """
    desired_by_id: dict[str, D] = {}
    for d in desired:
        desired_by_id[desired_id(d)] = d

    live_by_id: dict[str, list[L]] = {}
    for item in live:
        resource_id = live_tags(item).get(resource_id_tag_key)
        if not resource_id:
            raise IdentityViolationError(
                f"unexpected resource with no {resource_id_tag_key} tag: {live_arn(item)}"
            )
        live_by_id.setdefault(resource_id, []).append(item)

    result: MatchResult[D, L] = MatchResult()
    for resource_id in sorted(desired_by_id.keys() & live_by_id.keys()):
        d = desired_by_id[resource_id]
        paired = False
        for item in live_by_id[resource_id]:
            if paired or requires_replacement(d, item):
                result.live_only.append(item)
                continue
            result.pairs.append((d, item))
            paired = True
        if not paired:
            result.desired_only.append(d)

    for resource_id in sorted(desired_by_id.keys() - live_by_id.keys()):
        result.desired_only.append(desired_by_id[resource_id])
    for resource_id in sorted(live_by_id.keys() - desired_by_id.keys()):
        result.live_only.extend(live_by_id[resource_id])
    return result


def match_by_key(
    desired: Sequence[D],
    live: Sequence[L],
    *,
    desired_key: Callable[[D], K],
    live_key: Callable[[L], K],
    duplicate_error: type[DuplicateKeyError] = DuplicateKeyError,
) -> MatchResult[D, L]:
    """Match desired and live resources by a structural key.

    Raises:
        DuplicateKeyError: If a key occurs twice on either side; the
            concrete class is ``duplicate_error``.
    """
    desired_by_key = _index_unique(desired, desired_key, "desired", duplicate_error)
    live_by_key = _index_unique(live, live_key, "live", duplicate_error)

    result: MatchResult[D, L] = MatchResult()
    for key in sorted(desired_by_key.keys() & live_by_key.keys()):
        result.pairs.append((desired_by_key[key], live_by_key[key]))
    for key in sorted(desired_by_key.keys() - live_by_key.keys()):
        result.desired_only.append(desired_by_key[key])
    for key in sorted(live_by_key.keys() - desired_by_key.keys()):
        result.live_only.append(live_by_key[key])
    return result


def _index_unique(
    items: Sequence[L],
    key_of: Callable[[L], K],
    side: str,
    duplicate_error: type[DuplicateKeyError],
) -> dict[K, L]:
    indexed: dict[K, L] = {}
    for item in items:
        key = key_of(item)
        if key in indexed:
            raise duplicate_error(key, side)
        indexed[key] = item
    return indexed
