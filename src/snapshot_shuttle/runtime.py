"""Runtime functions for backup operations."""

from typing import Optional, Sequence

from snapshot_shuttle.backends.base import Backend, ProgressSink
from snapshot_shuttle.backends.local import LocalBackend
from snapshot_shuttle.backends.remote import RemoteBackend
from snapshot_shuttle.config import EngineContext
from snapshot_shuttle.errors import SnapshotNotFoundError
from snapshot_shuttle.logs import get_logger
from snapshot_shuttle.models import (
    BackupOptions,
    PrunePolicy,
    PruneResult,
    Snapshot,
    SnapshotListItem,
    format_timestamp,
)

log = get_logger("core.runtime")


def format_size(num_bytes: int) -> str:
    size = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if size < 1024 or unit == "TB":
            return f"{size:.0f} {unit}" if unit == "B" else f"{size:.1f} {unit}"
        size /= 1024
    return f"{size:.1f} TB"


def is_remote_target(target: str) -> bool:
    return target.startswith(("https://", "http://"))


def open_backend(
    target: str,
    context: Optional[EngineContext] = None,
    plain: bool = False,
) -> Backend:
    """
    Choose a backend for a repository target.

    Args:
        target: Local repository path, or a blob container URL with its SAS token.
        context: Engine context shared by the operations of this process.
        plain: Write new local snapshots as plain directories.
    """
    context = context or EngineContext()
    if is_remote_target(target):
        return RemoteBackend(target, context)
    return LocalBackend(target, context, plain=plain)


def _record_usage(backend: Backend, sources: Optional[Sequence[str]] = None) -> None:
    usage = backend.context.usage
    if usage is None:
        return
    try:
        usage.record_used(backend.identity, backend.kind.value, sources, backend.now())
    except OSError as e:
        log.warning(f"Could not update repository usage at {usage.path}: {e}")


def init_repo(target: str, context: Optional[EngineContext] = None) -> Backend:
    """
    Initialize a new backup repository.

    Raises:
        RepoAlreadyInitializedError: If a local repository already exists.
    """
    backend = open_backend(target, context)
    backend.initialize()
    _record_usage(backend)
    print(f"Initialized repository at {backend.identity}")
    return backend


def run_backup(
    target: str,
    sources: Sequence[str],
    options: Optional[BackupOptions] = None,
    context: Optional[EngineContext] = None,
    progress: Optional[ProgressSink] = None,
    plain: bool = False,
) -> Snapshot:
    """
    Back up one or more source directories into a new snapshot.

    Returns:
        The snapshot as recorded in its manifest.

    Raises:
        BackupError: On validation, planning, transfer or container failures.
    """
    backend = open_backend(target, context, plain=plain)
    snapshot = backend.backup(sources, options, progress)
    _record_usage(backend, snapshot.sources)
    print(
        f"Snapshot {snapshot.id} created with {snapshot.total_files} files "
        f"({format_size(snapshot.total_bytes)})"
    )
    return snapshot


def list_snapshots(target: str, context: Optional[EngineContext] = None) -> list[SnapshotListItem]:
    """List all snapshots in a repository, oldest first."""
    backend = open_backend(target, context)
    items = backend.list_snapshots()
    _record_usage(backend)

    if not items:
        print("No snapshots found.")
        return items

    print(f"{'Snapshot ID':<26} {'Created At':<28} {'Files':>8} {'Size':>10}")
    print("-" * 75)
    for item in items:
        print(
            f"{item.id:<26} {format_timestamp(item.created_at):<28} "
            f"{item.total_files:>8} {format_size(item.total_bytes):>10}"
        )
    return items


def run_restore(
    target: str,
    dest: str,
    snapshot_id: Optional[str] = None,
    concurrency: Optional[int] = None,
    context: Optional[EngineContext] = None,
) -> Snapshot:
    """
    Restore a snapshot to a destination directory.

    Args:
        snapshot_id: Snapshot to restore. If None, restores the newest.

    Raises:
        SnapshotNotFoundError: If the snapshot does not exist.
    """
    backend = open_backend(target, context)
    if not snapshot_id:
        items = backend.list_snapshots()
        if not items:
            raise SnapshotNotFoundError("latest")
        snapshot_id = items[-1].id

    snapshot = backend.restore(snapshot_id, dest, concurrency)
    _record_usage(backend)
    print(f"Restored snapshot {snapshot.id} ({snapshot.total_files} files) to {dest}")
    return snapshot


def run_prune(
    target: str,
    policy: PrunePolicy,
    context: Optional[EngineContext] = None,
) -> PruneResult:
    """Apply a retention policy; the newest snapshot always survives."""
    backend = open_backend(target, context)
    result = backend.prune(policy)
    _record_usage(backend)
    print(f"Pruned {len(result.deleted)} snapshot(s), kept {len(result.kept)}")
    for snapshot_id in result.deleted:
        print(f"  deleted {snapshot_id}")
    return result
