"""Tests for the retention policy."""

from datetime import datetime, timedelta, timezone

from snapshot_shuttle.models import PrunePolicy, SnapshotListItem
from snapshot_shuttle.retention import select_retained, sort_snapshots

NOW = datetime(2024, 6, 1, tzinfo=timezone.utc)


def _item(snapshot_id, days_ago):
    return SnapshotListItem(
        id=snapshot_id,
        created_at=NOW - timedelta(days=days_ago),
        total_files=1,
        total_bytes=1,
        sources=["/src"],
    )


SNAPSHOTS = [_item("c", 1), _item("a", 30), _item("b", 10)]


def _ids(items):
    return [s.id for s in items]


class TestSelectRetained:
    """Tests for keep-last / keep-days selection."""

    def test_keep_last_one(self):
        kept, deleted = select_retained(SNAPSHOTS, PrunePolicy(keep_last=1), NOW)
        assert _ids(kept) == ["c"]
        assert _ids(deleted) == ["a", "b"]

    def test_keep_days(self):
        kept, deleted = select_retained(SNAPSHOTS, PrunePolicy(keep_days=14), NOW)
        assert _ids(kept) == ["b", "c"]
        assert _ids(deleted) == ["a"]

    def test_union_of_rules(self):
        kept, _ = select_retained(SNAPSHOTS, PrunePolicy(keep_last=1, keep_days=20), NOW)
        assert _ids(kept) == ["b", "c"]

    def test_degenerate_policy_keeps_newest(self):
        kept, deleted = select_retained(SNAPSHOTS, PrunePolicy(keep_last=0, keep_days=0), NOW)
        assert _ids(kept) == ["c"]
        assert _ids(deleted) == ["a", "b"]

    def test_no_rules_keeps_newest(self):
        kept, deleted = select_retained(SNAPSHOTS, PrunePolicy(), NOW)
        assert _ids(kept) == ["c"]
        assert len(deleted) == 2

    def test_keep_last_larger_than_count(self):
        kept, deleted = select_retained(SNAPSHOTS, PrunePolicy(keep_last=10), NOW)
        assert _ids(kept) == ["a", "b", "c"]
        assert deleted == []

    def test_empty_input(self):
        assert select_retained([], PrunePolicy(keep_last=1), NOW) == ([], [])

    def test_sort_breaks_ties_by_id(self):
        same = [_item("z", 1), _item("y", 1)]
        assert _ids(sort_snapshots(same)) == ["y", "z"]
