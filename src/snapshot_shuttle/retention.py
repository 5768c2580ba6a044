"""Retention policy: which snapshots survive a prune."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional, Sequence, TypeVar

from snapshot_shuttle.models import PrunePolicy, SnapshotListItem, utcnow

T = TypeVar("T", bound=SnapshotListItem)


def sort_snapshots(items: Sequence[T]) -> list[T]:
    return sorted(items, key=lambda s: (s.created_at, s.id))


def select_retained(
    items: Sequence[T],
    policy: PrunePolicy,
    now: Optional[datetime] = None,
) -> tuple[list[T], list[T]]:
    """
    Split snapshots into (kept, deleted), both ascending by creation time.

    The kept set is the union of the newest ``keep_last`` snapshots and all
    snapshots not older than ``keep_days``. When that set is empty the
    newest snapshot is kept regardless.
    """
    ordered = sort_snapshots(items)
    if not ordered:
        return [], []

    keep: set[str] = set()
    if policy.keep_last is not None and policy.keep_last > 0:
        keep.update(s.id for s in ordered[-policy.keep_last:])
    if policy.keep_days is not None and policy.keep_days > 0:
        cutoff = (now or utcnow()) - timedelta(days=policy.keep_days)
        keep.update(s.id for s in ordered if s.created_at >= cutoff)
    if not keep:
        keep.add(ordered[-1].id)

    kept = [s for s in ordered if s.id in keep]
    deleted = [s for s in ordered if s.id not in keep]
    return kept, deleted
