"""Local filesystem repository: plain directories or staging containers."""

from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import Optional, Sequence

import fsspec

from snapshot_shuttle.backends.base import Backend, BackendKind, ProgressSink
from snapshot_shuttle.backends.container import (
    CONTAINER_TYPES,
    StagingContainer,
    container_capacity,
    default_container_type,
)
from snapshot_shuttle.config import EngineContext
from snapshot_shuttle.errors import (
    BackupError,
    InvalidEncryptionSettingsError,
    MountBusyError,
    RepoAlreadyInitializedError,
    SnapshotNotFoundError,
    UnsupportedPlatformError,
)
from snapshot_shuttle.ids import make_snapshot_id
from snapshot_shuttle.logs import get_logger
from snapshot_shuttle.models import (
    BackupOptions,
    RepoConfig,
    Snapshot,
    SnapshotListItem,
)
from snapshot_shuttle.pipeline.planner import Plan, WorkItem, WorkKind, plan_backup
from snapshot_shuttle.pipeline.scheduler import (
    ProgressTracker,
    WorkScheduler,
    ensure_directory,
    materialize,
)
from snapshot_shuttle.retention import sort_snapshots

log = get_logger("core.local")

MARKER_NAME = "config.json"
MANIFEST_NAME = "manifest.json"
SNAPSHOTS_DIR = "snapshots"
DATA_DIR = "data"


class LocalBackend(Backend):
    """
    Repository on a local path.

    New snapshots go into a staging container of ``container_type``
    (``snapshots/<id>.<ext>``) unless ``plain`` is set, in which case they
    are written as ``snapshots/<id>/``. Both layouts are read back.
    """

    kind = BackendKind.LOCAL

    def __init__(
        self,
        repo_path: str,
        context: Optional[EngineContext] = None,
        container_type: Optional[type[StagingContainer]] = None,
        plain: bool = False,
    ):
        super().__init__(context)
        self.path = os.path.abspath(os.path.expanduser(repo_path))
        self.fs, self.root = fsspec.core.url_to_fs(self.path)
        if not self.root.endswith("/"):
            self.root = self.root + "/"
        self.container_type = container_type or default_container_type()
        self.plain = plain

    @property
    def identity(self) -> str:
        return self.path

    @property
    def snapshots_dir(self) -> Path:
        return Path(self.path) / SNAPSHOTS_DIR

    def is_initialized(self) -> bool:
        return self.fs.exists(self.root + MARKER_NAME)

    def initialize(self) -> None:
        """
        Create ``config.json`` and ``snapshots/`` under the repository path.

        Raises:
            RepoAlreadyInitializedError: If the marker already exists.
        """
        if self.is_initialized():
            raise RepoAlreadyInitializedError(self.path)
        self.fs.makedirs(self.root + SNAPSHOTS_DIR, exist_ok=True)
        marker = RepoConfig(created_at=self.now())
        with self.fs.open(self.root + MARKER_NAME, "w") as f:
            f.write(marker.to_json())
        log.info(f"Initialized local repository at {self.path}")

    # Backup

    def _check_encryption(self, options: BackupOptions) -> None:
        if not options.wants_encryption:
            return
        if self.plain:
            raise InvalidEncryptionSettingsError(
                "Plain snapshot directories cannot be encrypted"
            )
        if not self.container_type.supports_encryption:
            raise UnsupportedPlatformError(
                f"{self.container_type.__name__} does not support certificate encryption"
            )

    def _container(self, snapshot_id: str, purpose: str, ext: Optional[str] = None) -> StagingContainer:
        container_type = CONTAINER_TYPES[ext] if ext else self.container_type
        return container_type.for_snapshot(
            self.snapshots_dir, snapshot_id, self.context.mount_root, purpose
        )

    def _populate(
        self,
        root: Path,
        plan: Plan,
        snapshot: Snapshot,
        concurrency: Optional[int],
        tracker: ProgressTracker,
    ) -> None:
        data = root / DATA_DIR
        data.mkdir(parents=True, exist_ok=True)
        log.info("[data] copying data...")
        WorkScheduler(concurrency).run(
            plan.items,
            lambda item: materialize(item, str(data / item.dest_key)),
            tracker,
        )
        log.info("[data] staging complete")

        partial = root / (MANIFEST_NAME + ".partial")
        partial.write_text(snapshot.to_json(), encoding="utf-8")
        os.replace(partial, root / MANIFEST_NAME)

    def backup(
        self,
        sources: Sequence[str],
        options: Optional[BackupOptions] = None,
        progress: Optional[ProgressSink] = None,
    ) -> Snapshot:
        """
        Plan ``sources``, stage them in a new snapshot and write its manifest.

        The manifest is written last. When any item fails the partial snapshot
        is removed and the first captured error is raised.

        Raises:
            InvalidEncryptionSettingsError: If encryption is requested for the plain layout.
            UnsupportedPlatformError: If the container type cannot be encrypted.
            CopyFailedError: If a file could not be staged.
        """
        options = options or BackupOptions()
        self.ensure_initialized()
        self._check_encryption(options)

        created_at = self.now()
        snapshot_id = make_snapshot_id(created_at)
        plan = plan_backup(sources, options)

        if self.plain:
            relative = f"{SNAPSHOTS_DIR}/{snapshot_id}"
        else:
            relative = f"{SNAPSHOTS_DIR}/{snapshot_id}.{self.container_type.extension}"
        snapshot = Snapshot(
            id=snapshot_id,
            created_at=created_at,
            sources=plan.sources,
            total_files=plan.total_files,
            total_bytes=plan.total_bytes,
            relative_path=relative,
        )
        tracker = ProgressTracker(plan.total_files, plan.total_bytes, progress)
        tracker.emit()

        if self.plain:
            target = self.snapshots_dir / snapshot_id
            target.mkdir(parents=True)
            try:
                self._populate(target, plan, snapshot, options.concurrency, tracker)
            except BaseException:
                shutil.rmtree(target, ignore_errors=True)
                raise
        else:
            self._backup_into_container(snapshot, plan, options, tracker)

        log.info(
            f"Snapshot {snapshot.id} written to {self.path} "
            f"({snapshot.total_files} files, {snapshot.total_bytes} bytes)"
        )
        return snapshot

    def _backup_into_container(
        self,
        snapshot: Snapshot,
        plan: Plan,
        options: BackupOptions,
        tracker: ProgressTracker,
    ) -> None:
        container = self._container(snapshot.id, "local")
        container.create(
            container_capacity(plan.total_bytes),
            options.encryption,
            self.context.certificate_resolver,
        )
        try:
            with container.mounted(force=self.context.force_detach) as mount:
                self._populate(mount, plan, snapshot, options.concurrency, tracker)
        except MountBusyError:
            raise
        except BaseException:
            if container.mount_point.exists():
                log.warning(f"Leaving {container.artifact} in place; still attached")
            else:
                container.remove()
            raise

    # Restore

    def _locate(self, snapshot_id: str) -> tuple[Optional[Path], Optional[StagingContainer]]:
        plain = self.snapshots_dir / snapshot_id
        if (plain / MANIFEST_NAME).is_file():
            return plain, None
        for ext in CONTAINER_TYPES:
            container = self._container(snapshot_id, "restore-local", ext)
            if container.exists():
                return None, container
        return None, None

    def _read_manifest(self, root: Path) -> Snapshot:
        with self.fs.open(str(root / MANIFEST_NAME), "r") as f:
            return Snapshot.from_json(f.read())

    def _restore_tree(self, root: Path, destination: str, concurrency: Optional[int]) -> Snapshot:
        snapshot = self._read_manifest(root)
        data = root / DATA_DIR
        items: list[WorkItem] = []
        ensure_directory(destination)

        # directories are created up front, one at a time
        for dirpath, dirnames, filenames in os.walk(data):
            rel_dir = os.path.relpath(dirpath, data)
            for name in sorted(dirnames + filenames):
                full = os.path.join(dirpath, name)
                rel = os.path.normpath(os.path.join(rel_dir, name)).replace(os.sep, "/")
                if os.path.islink(full):
                    items.append(
                        WorkItem(full, rel, rel, WorkKind.SYMLINK, link_target=os.readlink(full))
                    )
                elif os.path.isdir(full):
                    ensure_directory(os.path.join(destination, rel))
                else:
                    items.append(WorkItem(full, rel, rel, size=os.lstat(full).st_size))

        tracker = ProgressTracker(
            sum(1 for i in items if i.kind is WorkKind.FILE),
            sum(i.size for i in items),
        )
        WorkScheduler(concurrency).run(
            items,
            lambda item: materialize(item, os.path.join(destination, item.dest_key)),
            tracker,
        )
        return snapshot

    def restore(
        self,
        snapshot_id: str,
        destination: str,
        concurrency: Optional[int] = None,
    ) -> Snapshot:
        """Restore from either layout; containers are mounted read-only."""
        self.ensure_initialized()
        plain, container = self._locate(snapshot_id)
        destination = os.path.abspath(os.path.expanduser(destination))
        if plain is not None:
            snapshot = self._restore_tree(plain, destination, concurrency)
        elif container is not None:
            with container.mounted(force=self.context.force_detach, readonly=True) as mount:
                snapshot = self._restore_tree(mount, destination, concurrency)
        else:
            raise SnapshotNotFoundError(snapshot_id)
        log.info(f"Restored snapshot {snapshot_id} to {destination}")
        return snapshot

    # List / prune

    def list_snapshots(self) -> list[SnapshotListItem]:
        """
        List plain and container snapshots, oldest first.

        A snapshot present in both layouts is reported once, from the plain
        directory. Unreadable manifests and containers are logged and skipped.
        """
        self.ensure_initialized()
        if not self.fs.exists(self.root + SNAPSHOTS_DIR):
            return []

        plain: dict[str, SnapshotListItem] = {}
        staged: dict[str, str] = {}
        for entry in self.fs.ls(self.root + SNAPSHOTS_DIR, detail=True):
            name = entry["name"].rstrip("/").split("/")[-1]
            if entry["type"] == "directory":
                try:
                    item = self._read_manifest(self.snapshots_dir / name).to_list_item()
                    plain[item.id] = item
                except (OSError, ValueError, KeyError, TypeError) as e:
                    log.warning(f"Skipping snapshot directory {name}: {e}")
                continue
            stem, _, ext = name.rpartition(".")
            if stem and ext in CONTAINER_TYPES:
                staged.setdefault(stem, ext)

        items = dict(plain)
        for snapshot_id, ext in staged.items():
            if snapshot_id in items:
                continue
            container = self._container(snapshot_id, "list", ext)
            try:
                with container.mounted(force=self.context.force_detach, readonly=True) as mount:
                    items[snapshot_id] = self._read_manifest(mount).to_list_item()
            except (BackupError, OSError, ValueError, KeyError, TypeError) as e:
                log.warning(f"Skipping snapshot container {container.artifact.name}: {e}")
        return sort_snapshots(list(items.values()))

    def _delete_snapshot(self, snapshot_id: str) -> None:
        plain = self.root + f"{SNAPSHOTS_DIR}/{snapshot_id}"
        if self.fs.exists(plain):
            self.fs.rm(plain, recursive=True)
        for ext in CONTAINER_TYPES:
            container = self._container(snapshot_id, "local", ext)
            if container.exists():
                container.remove()
