"""Bounded worker pool with shared progress and first-error capture."""

from __future__ import annotations

import os
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Iterable, Optional

from snapshot_shuttle.errors import BackupIOError, CopyFailedError
from snapshot_shuttle.logs import get_logger
from snapshot_shuttle.models import BackupProgress
from snapshot_shuttle.pipeline.planner import WorkItem, WorkKind

log = get_logger("core.scheduler")

ProgressCallback = Callable[[BackupProgress], None]


def resolve_concurrency(requested: Optional[int] = None) -> int:
    return max(1, requested or os.cpu_count() or 1)


class ProgressTracker:
    """
    Cumulative counters plus the first-error slot.

    Every mutation happens under one lock and the callback is invoked while
    the lock is held, so callbacks never see a torn state. A slow callback
    stalls every worker.
    """

    def __init__(
        self,
        total_files: int = 0,
        total_bytes: int = 0,
        callback: Optional[ProgressCallback] = None,
    ):
        self.total_files = total_files
        self.total_bytes = total_bytes
        self._callback = callback
        self._lock = threading.Lock()
        self._files = 0
        self._bytes = 0
        self._error: Optional[BaseException] = None

    def _snapshot(self, current_path: Optional[str]) -> BackupProgress:
        return BackupProgress(
            processed_files=self._files,
            total_files=self.total_files,
            processed_bytes=self._bytes,
            total_bytes=self.total_bytes,
            current_path=current_path,
        )

    def snapshot(self) -> BackupProgress:
        with self._lock:
            return self._snapshot(None)

    def advance(self, item: WorkItem) -> None:
        with self._lock:
            # symlinks never count towards totals
            if item.kind is WorkKind.FILE:
                self._files += 1
                self._bytes += item.size
            if self._callback is not None:
                self._callback(self._snapshot(item.relative_path))

    def emit(self, current_path: Optional[str] = None) -> None:
        with self._lock:
            if self._callback is not None:
                self._callback(self._snapshot(current_path))

    def fail(self, error: BaseException) -> None:
        with self._lock:
            if self._error is None:
                self._error = error

    @property
    def error(self) -> Optional[BaseException]:
        with self._lock:
            return self._error


class WorkScheduler:
    """Drain a fixed work list on a thread pool; run to completion, then fail."""

    def __init__(self, concurrency: Optional[int] = None):
        self.concurrency = resolve_concurrency(concurrency)

    def run(
        self,
        items: Iterable[WorkItem],
        handler: Callable[[WorkItem], None],
        tracker: Optional[ProgressTracker] = None,
    ) -> ProgressTracker:
        tracker = tracker or ProgressTracker()
        items = list(items)
        if not items:
            return tracker

        def work(item: WorkItem) -> None:
            handler(item)
            tracker.advance(item)

        with ThreadPoolExecutor(max_workers=self.concurrency) as executor:
            future_to_item = {executor.submit(work, item): item for item in items}
            for future in as_completed(future_to_item):
                item = future_to_item[future]
                try:
                    future.result()
                except Exception as e:
                    log.error(f"Work item failed: {item.relative_path}: {e}")
                    tracker.fail(e)

        if tracker.error is not None:
            raise tracker.error
        return tracker


def ensure_directory(path: str) -> None:
    """Create ``path`` and its parents; raises BackupIOError when that is impossible."""
    try:
        os.makedirs(path, exist_ok=True)
    except OSError as e:
        raise BackupIOError(f"Cannot create directory {path}: {e}") from e


def _clear_destination(destination: str) -> None:
    if os.path.islink(destination) or os.path.isfile(destination):
        os.remove(destination)
    elif os.path.isdir(destination):
        shutil.rmtree(destination)


def copy_file(source: str, destination: str) -> None:
    """Copy a regular file, replacing whatever sits at ``destination``."""
    try:
        os.makedirs(os.path.dirname(destination), exist_ok=True)
        _clear_destination(destination)
        shutil.copy2(source, destination)
    except OSError as e:
        raise CopyFailedError(source, destination, e) from e


def place_symlink(target: str, destination: str, fallback_source: Optional[str] = None) -> None:
    """
    Recreate a symlink with its raw target.

    When the link cannot be created the content behind ``fallback_source``
    is copied as a regular file instead.
    """
    try:
        os.makedirs(os.path.dirname(destination), exist_ok=True)
        _clear_destination(destination)
        os.symlink(target, destination)
    except OSError as e:
        if fallback_source is None or not os.path.isfile(fallback_source):
            raise CopyFailedError(target, destination, e) from e
        log.warning(f"Symlink failed for {destination}, copying content instead: {e}")
        copy_file(os.path.realpath(fallback_source), destination)


def materialize(item: WorkItem, destination: str) -> None:
    if item.kind is WorkKind.SYMLINK:
        place_symlink(item.link_target or "", destination, fallback_source=item.source)
    else:
        copy_file(item.source, destination)
