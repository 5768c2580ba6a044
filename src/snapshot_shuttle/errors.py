"""Error hierarchy for backup operations."""

from __future__ import annotations

from typing import Optional


class BackupError(RuntimeError):
    """Base exception for backup related failures."""


# Validation


class ValidationError(BackupError):
    """Raised before any side effect when inputs or repository state are invalid."""


class SourceNotADirectoryError(ValidationError):
    def __init__(self, path: str):
        super().__init__(f"Not a directory: {path}")
        self.path = path


class RepoAlreadyInitializedError(ValidationError):
    def __init__(self, repo: str):
        super().__init__(f"Repository already exists at: {repo}")
        self.repo = repo


class RepoNotInitializedError(ValidationError):
    def __init__(self, repo: str):
        super().__init__(f"Repository not initialized at: {repo}. Run init first.")
        self.repo = repo


class InvalidEncryptionSettingsError(ValidationError):
    pass


# Not found


class SnapshotNotFoundError(BackupError):
    def __init__(self, snapshot_id: str):
        super().__init__(f"Snapshot not found: {snapshot_id}")
        self.snapshot_id = snapshot_id


# I/O


class BackupIOError(BackupError):
    pass


class PlanningError(BackupIOError):
    pass


class CopyFailedError(BackupIOError):
    def __init__(self, source: str, destination: str, cause: BaseException):
        super().__init__(f"Failed to copy {source} to {destination}: {cause}")
        self.source = source
        self.destination = destination
        self.cause = cause


class ContainerCommandError(BackupIOError):
    pass


class MountBusyError(BackupIOError):
    def __init__(self, mount_point: str):
        super().__init__(
            f"Cannot detach: mount point is busy (open files under {mount_point})"
        )
        self.mount_point = mount_point


# Remote protocol


class RemoteProtocolError(BackupError):
    """A blob request failed; ``status`` is None when no response was received."""

    def __init__(self, operation: str, status: Optional[int], path: str = ""):
        target = f" for {path}" if path else ""
        super().__init__(f"Remote {operation} failed (status {status}){target}")
        self.operation = operation
        self.status = status
        self.path = path


# Encryption


class EncryptionError(BackupError):
    pass


class CertificateNotFoundError(EncryptionError):
    def __init__(self, selector: str):
        super().__init__(f"Certificate not found for selector: {selector}")
        self.selector = selector


class NoRecipientsError(EncryptionError):
    def __init__(self):
        super().__init__("At least one certificate recipient is required")


class TempArtifactWriteError(EncryptionError):
    pass


class UnsupportedPlatformError(EncryptionError):
    pass


__all__ = [
    "BackupError",
    "ValidationError",
    "SourceNotADirectoryError",
    "RepoAlreadyInitializedError",
    "RepoNotInitializedError",
    "InvalidEncryptionSettingsError",
    "SnapshotNotFoundError",
    "BackupIOError",
    "PlanningError",
    "CopyFailedError",
    "ContainerCommandError",
    "MountBusyError",
    "RemoteProtocolError",
    "EncryptionError",
    "CertificateNotFoundError",
    "NoRecipientsError",
    "TempArtifactWriteError",
    "UnsupportedPlatformError",
]
