"""Tests for the worker pool and progress aggregation."""

import os
import threading

import pytest

from conftest import make_tree
from snapshot_shuttle.backends.local import LocalBackend
from snapshot_shuttle.errors import CopyFailedError
from snapshot_shuttle.models import BackupOptions
from snapshot_shuttle.pipeline.planner import WorkItem, WorkKind
from snapshot_shuttle.pipeline.scheduler import (
    ProgressTracker,
    WorkScheduler,
    copy_file,
    place_symlink,
    resolve_concurrency,
)


def _items(n, size=10):
    return [WorkItem(f"/src/{i}", f"k/{i}", f"{i}", size=size) for i in range(n)]


class TestConcurrency:
    """Tests for pool sizing."""

    def test_resolve_concurrency(self):
        assert resolve_concurrency(4) == 4
        assert resolve_concurrency(0) >= 1
        assert resolve_concurrency(None) == max(1, os.cpu_count() or 1)
        assert resolve_concurrency(-3) == 1


class TestProgressTracker:
    """Tests for the shared counters."""

    def test_symlinks_do_not_count(self):
        seen = []
        tracker = ProgressTracker(1, 5, seen.append)
        tracker.advance(WorkItem("/a", "a", "a", size=5))
        tracker.advance(WorkItem("/l", "l", "l", WorkKind.SYMLINK, link_target="a"))
        snap = tracker.snapshot()
        assert (snap.processed_files, snap.processed_bytes) == (1, 5)
        assert len(seen) == 2
        assert seen[-1].current_path == "l"

    def test_first_error_wins(self):
        tracker = ProgressTracker()
        first, second = ValueError("first"), ValueError("second")
        tracker.fail(first)
        tracker.fail(second)
        assert tracker.error is first


class TestWorkScheduler:
    """Tests for run-to-completion-then-fail execution."""

    def test_all_items_processed(self):
        done = []
        lock = threading.Lock()

        def handler(item):
            with lock:
                done.append(item.relative_path)

        tracker = WorkScheduler(4).run(_items(50), handler, ProgressTracker(50, 500))
        assert sorted(done, key=int) == [str(i) for i in range(50)]
        assert tracker.snapshot().processed_bytes == 500

    def test_error_raised_after_drain(self):
        handled = []
        lock = threading.Lock()

        def handler(item):
            with lock:
                handled.append(item.relative_path)
            if int(item.relative_path) % 7 == 3:
                raise RuntimeError(f"boom {item.relative_path}")

        with pytest.raises(RuntimeError, match="boom"):
            WorkScheduler(3).run(_items(20), handler)
        assert len(handled) == 20

    def test_empty_work_list(self):
        tracker = WorkScheduler(2).run([], lambda item: None)
        assert tracker.snapshot().processed_files == 0


class TestCounterCorrectness:
    """Totals must not depend on the pool size."""

    def test_two_hundred_files(self, tmp_path, context):
        src = make_tree(tmp_path / "src", {f"f{i:03d}.bin": b"x" * 1024 for i in range(200)})
        results = []
        for concurrency in (1, 8):
            repo = tmp_path / f"repo{concurrency}"
            backend = LocalBackend(str(repo), context, plain=True)
            backend.initialize()
            calls = []
            snap = backend.backup([src], BackupOptions(concurrency=concurrency), calls.append)
            assert calls
            assert calls[-1].processed_files == 200
            assert calls[-1].processed_bytes == 200 * 1024
            results.append((snap.total_files, snap.total_bytes))
        assert results[0] == results[1] == (200, 200 * 1024)


class TestCopyHelpers:
    """Tests for destination replacement and symlink fallback."""

    def test_copy_replaces_existing(self, tmp_path):
        src = tmp_path / "src.txt"
        src.write_text("new")
        dst = tmp_path / "out" / "dst.txt"
        dst.parent.mkdir()
        dst.write_text("old")
        copy_file(str(src), str(dst))
        assert dst.read_text() == "new"

    def test_copy_missing_source(self, tmp_path):
        with pytest.raises(CopyFailedError):
            copy_file(str(tmp_path / "nope"), str(tmp_path / "dst"))

    def test_symlink_replaces_file(self, tmp_path):
        dst = tmp_path / "link"
        dst.write_text("stale")
        place_symlink("target.txt", str(dst))
        assert os.readlink(dst) == "target.txt"

    def test_symlink_falls_back_to_copy(self, tmp_path, monkeypatch):
        real = tmp_path / "real.txt"
        real.write_text("content")
        link = tmp_path / "link"
        os.symlink(real, link)

        def refuse(*args, **kwargs):
            raise OSError("symlinks not permitted")

        monkeypatch.setattr(os, "symlink", refuse)
        dst = tmp_path / "restored" / "link"
        place_symlink(str(real), str(dst), fallback_source=str(link))
        assert not dst.is_symlink()
        assert dst.read_text() == "content"

    def test_symlink_without_fallback_fails(self, tmp_path, monkeypatch):
        def refuse(*args, **kwargs):
            raise OSError("symlinks not permitted")

        monkeypatch.setattr(os, "symlink", refuse)
        with pytest.raises(CopyFailedError):
            place_symlink("x", str(tmp_path / "l"))
