"""Remote repository in a blob container."""

from __future__ import annotations

import json
import os
from typing import Optional, Sequence

import requests

from snapshot_shuttle.backends.base import Backend, BackendKind, ProgressSink
from snapshot_shuttle.backends.blob_client import BlobClient
from snapshot_shuttle.config import EngineContext
from snapshot_shuttle.errors import (
    BackupIOError,
    InvalidEncryptionSettingsError,
    RemoteProtocolError,
    SnapshotNotFoundError,
)
from snapshot_shuttle.ids import make_snapshot_id
from snapshot_shuttle.logs import get_logger, redact_url
from snapshot_shuttle.models import (
    BackupOptions,
    RepoConfig,
    Snapshot,
    SnapshotListItem,
    dumps_json,
)
from snapshot_shuttle.pipeline.planner import WorkItem, WorkKind, plan_backup
from snapshot_shuttle.pipeline.scheduler import (
    ProgressTracker,
    WorkScheduler,
    ensure_directory,
    place_symlink,
)
from snapshot_shuttle.retention import sort_snapshots
from snapshot_shuttle.typing_ import SymlinkMap

log = get_logger("core.remote")

MARKER_NAME = "config.json"
SNAPSHOTS_PREFIX = "snapshots/"
MANIFEST_NAME = "manifest.json"
SYMLINKS_NAME = "symlinks.json"


def _snapshot_prefix(snapshot_id: str) -> str:
    return f"{SNAPSHOTS_PREFIX}{snapshot_id}/"


def _local_path(destination: str, key: str) -> str:
    path = os.path.normpath(os.path.join(destination, key))
    if path != destination and not path.startswith(destination + os.sep):
        raise BackupIOError(f"Refusing to restore outside {destination}: {key}")
    return path


class RemoteBackend(Backend):
    """
    Repository in a blob container addressed by a SAS URL.

    Snapshots live under ``snapshots/<id>/``: file data under ``data/``,
    symlinks in ``symlinks.json`` and the manifest, uploaded last, in
    ``manifest.json``.
    """

    kind = BackendKind.REMOTE

    def __init__(
        self,
        container_url: str,
        context: Optional[EngineContext] = None,
        session: Optional[requests.Session] = None,
        client: Optional[BlobClient] = None,
    ):
        super().__init__(context)
        self.client = client or BlobClient(container_url, session=session)
        self._identity = redact_url(container_url)

    @property
    def identity(self) -> str:
        return self._identity

    def is_initialized(self) -> bool:
        return self.client.exists(MARKER_NAME)

    def initialize(self) -> None:
        """Upload the marker unless it already exists."""
        if self.is_initialized():
            log.info(f"Remote repository already initialized at {self.identity}")
            return
        marker = RepoConfig(created_at=self.now())
        self.client.upload_bytes(MARKER_NAME, marker.to_json().encode("utf-8"), "application/json")
        log.info(f"Initialized remote repository at {self.identity}")

    def backup(
        self,
        sources: Sequence[str],
        options: Optional[BackupOptions] = None,
        progress: Optional[ProgressSink] = None,
    ) -> Snapshot:
        """
        Upload ``sources`` as a new snapshot.

        Files are uploaded concurrently, then the symlink map, then the
        manifest. A snapshot without a manifest is never listed.

        Raises:
            InvalidEncryptionSettingsError: If certificate encryption is requested.
            RemoteProtocolError: If any upload fails.
        """
        options = options or BackupOptions()
        if options.wants_encryption:
            raise InvalidEncryptionSettingsError(
                "Certificate encryption is only available for local repositories"
            )
        self.ensure_initialized()

        created_at = self.now()
        snapshot_id = make_snapshot_id(created_at)
        prefix = _snapshot_prefix(snapshot_id)
        data_prefix = prefix + "data/"
        plan = plan_backup(sources, options, dest_prefix=data_prefix)

        tracker = ProgressTracker(plan.total_files, plan.total_bytes, progress)
        tracker.emit()
        files = [i for i in plan.items if i.kind is WorkKind.FILE]
        log.info(f"Uploading {len(files)} files to {self.identity} as {snapshot_id}")
        WorkScheduler(options.concurrency).run(
            files,
            lambda item: self.client.upload_file(item.source, item.dest_key),
            tracker,
        )

        symlinks: SymlinkMap = {
            i.dest_key[len(data_prefix):]: i.link_target or "" for i in plan.symlinks
        }
        if symlinks:
            self.client.upload_bytes(
                prefix + SYMLINKS_NAME, dumps_json(symlinks).encode("utf-8"), "application/json"
            )

        snapshot = Snapshot(
            id=snapshot_id,
            created_at=created_at,
            sources=plan.sources,
            total_files=plan.total_files,
            total_bytes=plan.total_bytes,
            relative_path=prefix.rstrip("/"),
        )
        # manifest last: the snapshot becomes visible once it exists
        self.client.upload_bytes(
            prefix + MANIFEST_NAME, snapshot.to_json().encode("utf-8"), "application/json"
        )
        log.info(
            f"Snapshot {snapshot_id} uploaded "
            f"({snapshot.total_files} files, {snapshot.total_bytes} bytes)"
        )
        return snapshot

    def _read_manifest(self, snapshot_id: str) -> Snapshot:
        data = self.client.download_bytes(_snapshot_prefix(snapshot_id) + MANIFEST_NAME)
        return Snapshot.from_json(data)

    def list_snapshots(self) -> list[SnapshotListItem]:
        """List snapshots with a readable manifest, oldest first."""
        self.ensure_initialized()
        listing = self.client.list_blobs(SNAPSHOTS_PREFIX, delimiter="/")
        items = []
        for prefix in listing.prefixes:
            snapshot_id = prefix[len(SNAPSHOTS_PREFIX):].strip("/")
            if not snapshot_id:
                continue
            try:
                items.append(self._read_manifest(snapshot_id).to_list_item())
            except (RemoteProtocolError, ValueError, KeyError, TypeError) as e:
                log.debug(f"Skipping incomplete snapshot {snapshot_id}: {e}")
        return sort_snapshots(items)

    def restore(
        self,
        snapshot_id: str,
        destination: str,
        concurrency: Optional[int] = None,
    ) -> Snapshot:
        """Download a snapshot concurrently, then recreate its symlinks."""
        self.ensure_initialized()
        prefix = _snapshot_prefix(snapshot_id)
        if not self.client.exists(prefix + MANIFEST_NAME):
            raise SnapshotNotFoundError(snapshot_id)
        snapshot = self._read_manifest(snapshot_id)

        destination = os.path.abspath(os.path.expanduser(destination))
        ensure_directory(destination)
        data_prefix = prefix + "data/"
        items = [
            WorkItem(
                source=blob.name,
                dest_key=blob.name[len(data_prefix):],
                relative_path=blob.name[len(data_prefix):],
                size=blob.size,
            )
            for blob in self.client.list_blobs(data_prefix).blobs
        ]
        tracker = ProgressTracker(len(items), sum(i.size for i in items))
        WorkScheduler(concurrency).run(
            items,
            lambda item: self.client.download_to(
                item.source, _local_path(destination, item.dest_key)
            ),
            tracker,
        )

        if self.client.exists(prefix + SYMLINKS_NAME):
            symlinks: SymlinkMap = json.loads(self.client.download_bytes(prefix + SYMLINKS_NAME))
            for key, target in sorted(symlinks.items()):
                place_symlink(target, _local_path(destination, key))

        log.info(f"Restored snapshot {snapshot_id} to {destination}")
        return snapshot

    def _delete_snapshot(self, snapshot_id: str) -> None:
        for blob in self.client.list_blobs(_snapshot_prefix(snapshot_id)).blobs:
            self.client.delete(blob.name)
