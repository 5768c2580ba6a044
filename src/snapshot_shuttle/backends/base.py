"""Backend contract shared by local and remote repositories."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Sequence

from snapshot_shuttle.config import EngineContext
from snapshot_shuttle.errors import RepoNotInitializedError
from snapshot_shuttle.logs import get_logger
from snapshot_shuttle.models import (
    BackupOptions,
    BackupProgress,
    PrunePolicy,
    PruneResult,
    Snapshot,
    SnapshotListItem,
)
from snapshot_shuttle.retention import select_retained

ProgressSink = Callable[[BackupProgress], None]

log = get_logger("core.backend")


class BackendKind(str, Enum):
    LOCAL = "Local"
    REMOTE = "Remote"


class Backend(ABC):
    """
    One repository, local or remote.

    Every operation other than ``initialize`` requires the repository
    marker to be present and raises ``RepoNotInitializedError`` otherwise.
    """

    kind: BackendKind

    def __init__(self, context: Optional[EngineContext] = None):
        self.context = context or EngineContext()

    @property
    @abstractmethod
    def identity(self) -> str:
        """Repository key safe to log and persist (no credentials)."""

    @abstractmethod
    def initialize(self) -> None:
        """
        Create the repository marker and layout.

        Raises:
            RepoAlreadyInitializedError: If the backend refuses to re-initialize.
        """

    @abstractmethod
    def is_initialized(self) -> bool:
        """Return True when the repository marker is present."""

    def ensure_initialized(self) -> None:
        if not self.is_initialized():
            raise RepoNotInitializedError(self.identity)

    @abstractmethod
    def backup(
        self,
        sources: Sequence[str],
        options: Optional[BackupOptions] = None,
        progress: Optional[ProgressSink] = None,
    ) -> Snapshot:
        """
        Create a snapshot of ``sources``.

        Args:
            sources: Absolute paths of the directories to back up.
            options: Filters, concurrency and encryption for this run.
            progress: Callback receiving a BackupProgress after every finished item.

        Returns:
            The manifest of the finalized snapshot.

        Raises:
            RepoNotInitializedError: If the repository has no marker.
            SourceNotADirectoryError: If a source is not an existing directory.
            BackupError: If any work item fails; no snapshot is finalized then.
        """

    @abstractmethod
    def list_snapshots(self) -> list[SnapshotListItem]:
        """
        List finalized snapshots, oldest first.

        Entries whose manifest cannot be read are logged and skipped.
        """

    @abstractmethod
    def restore(
        self,
        snapshot_id: str,
        destination: str,
        concurrency: Optional[int] = None,
    ) -> Snapshot:
        """
        Restore a snapshot into ``destination``.

        Files land in ``<destination>/<source name>/<relative path>``; existing
        files at those paths are replaced.

        Args:
            snapshot_id: Id of the snapshot to restore.
            destination: Directory to restore into; created when missing.
            concurrency: Worker count, defaults to the machine's CPU count.

        Returns:
            The manifest of the restored snapshot.

        Raises:
            SnapshotNotFoundError: If no snapshot has that id.
            BackupIOError: If the destination cannot be prepared or written.
        """

    @abstractmethod
    def _delete_snapshot(self, snapshot_id: str) -> None:
        pass

    def now(self) -> datetime:
        return self.context.clock()

    def prune(self, policy: PrunePolicy) -> PruneResult:
        """
        Delete the snapshots ``policy`` does not retain.

        Returns:
            Ids of the deleted and kept snapshots, oldest first.
        """
        self.ensure_initialized()
        kept, deleted = select_retained(self.list_snapshots(), policy, now=self.now())
        for item in deleted:
            log.info(f"Pruning snapshot {item.id} from {self.identity}")
            self._delete_snapshot(item.id)
        return PruneResult(deleted=[s.id for s in deleted], kept=[s.id for s in kept])
