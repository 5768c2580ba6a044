from .backends import Backend, BackendKind, LocalBackend, RemoteBackend
from .config import AppConfig, EngineContext, load_config
from .errors import BackupError
from .models import (
    BackupOptions,
    BackupProgress,
    EncryptionMode,
    EncryptionSettings,
    PrunePolicy,
    PruneResult,
    Snapshot,
    SnapshotListItem,
)
from .runtime import open_backend

__version__ = "0.1.0"

__all__ = [
    "Backend",
    "BackendKind",
    "LocalBackend",
    "RemoteBackend",
    "AppConfig",
    "EngineContext",
    "load_config",
    "BackupError",
    "BackupOptions",
    "BackupProgress",
    "EncryptionMode",
    "EncryptionSettings",
    "PrunePolicy",
    "PruneResult",
    "Snapshot",
    "SnapshotListItem",
    "open_backend",
]
