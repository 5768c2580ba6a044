"""Snapshot data model and JSON (de)serialization."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Sequence

from snapshot_shuttle.errors import InvalidEncryptionSettingsError
from snapshot_shuttle.typing_ import ManifestPayload, RepoConfigPayload

REPO_FORMAT_VERSION = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Render an aware datetime as ISO-8601 UTC with a ``Z`` suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(text: str) -> datetime:
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


def dumps_json(payload: Any) -> str:
    return json.dumps(payload, indent=2, sort_keys=True, ensure_ascii=False)


def _require(data: dict[str, Any], key: str, kind: type) -> Any:
    value = data[key]
    if not isinstance(value, kind) or isinstance(value, bool):
        raise ValueError(f"manifest field {key!r} must be {kind.__name__}, got {value!r}")
    return value


@dataclass(frozen=True)
class Snapshot:
    """One immutable backup run, as recorded in its manifest."""

    id: str
    created_at: datetime
    sources: list[str]
    total_files: int
    total_bytes: int
    relative_path: str

    def to_dict(self) -> ManifestPayload:
        return {
            "id": self.id,
            "createdAt": format_timestamp(self.created_at),
            "sources": list(self.sources),
            "totalFiles": self.total_files,
            "totalBytes": self.total_bytes,
            "relativePath": self.relative_path,
        }

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "Snapshot":
        """
        Build a Snapshot from a decoded manifest.

        Raises:
            KeyError: If a required key is missing.
            ValueError: If a value has the wrong type or format.
        """
        sources = data["sources"]
        if not isinstance(sources, list) or not all(isinstance(s, str) for s in sources):
            raise ValueError("manifest sources must be a list of strings")
        return Snapshot(
            id=_require(data, "id", str),
            created_at=parse_timestamp(_require(data, "createdAt", str)),
            sources=list(sources),
            total_files=_require(data, "totalFiles", int),
            total_bytes=_require(data, "totalBytes", int),
            relative_path=_require(data, "relativePath", str),
        )

    def to_json(self) -> str:
        return dumps_json(self.to_dict())

    @staticmethod
    def from_json(text: str | bytes) -> "Snapshot":
        data = json.loads(text)
        if not isinstance(data, dict):
            raise ValueError("manifest must be a JSON object")
        return Snapshot.from_dict(data)

    def to_list_item(self) -> "SnapshotListItem":
        return SnapshotListItem(
            id=self.id,
            created_at=self.created_at,
            total_files=self.total_files,
            total_bytes=self.total_bytes,
            sources=list(self.sources),
        )


@dataclass(frozen=True)
class SnapshotListItem:
    """Read-only projection of a Snapshot used for listings."""

    id: str
    created_at: datetime
    total_files: int
    total_bytes: int
    sources: list[str]


@dataclass(frozen=True)
class RepoConfig:
    """Repository marker; its presence means the repository is initialized."""

    version: int = REPO_FORMAT_VERSION
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> RepoConfigPayload:
        return {"version": self.version, "createdAt": format_timestamp(self.created_at)}

    @staticmethod
    def from_dict(data: dict[str, Any]) -> "RepoConfig":
        return RepoConfig(
            version=int(data["version"]),
            created_at=parse_timestamp(str(data["createdAt"])),
        )

    def to_json(self) -> str:
        return dumps_json(self.to_dict())


class EncryptionMode(str, Enum):
    NONE = "none"
    CERTIFICATE = "certificate"


@dataclass(frozen=True)
class EncryptionSettings:
    mode: EncryptionMode = EncryptionMode.NONE
    recipients: tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "mode", EncryptionMode(self.mode))
        object.__setattr__(self, "recipients", tuple(self.recipients))
        if self.mode is not EncryptionMode.NONE and not self.recipients:
            raise InvalidEncryptionSettingsError(
                f"Encryption mode '{self.mode.value}' requires at least one recipient"
            )

    @property
    def enabled(self) -> bool:
        return self.mode is not EncryptionMode.NONE


@dataclass(frozen=True)
class BackupOptions:
    """Filters and execution knobs for one backup invocation."""

    include: Sequence[str] = ()
    exclude: Sequence[str] = ()
    concurrency: Optional[int] = None
    encryption: Optional[EncryptionSettings] = None

    def __post_init__(self):
        object.__setattr__(self, "include", tuple(self.include))
        object.__setattr__(self, "exclude", tuple(self.exclude))

    @property
    def wants_encryption(self) -> bool:
        return self.encryption is not None and self.encryption.enabled


@dataclass(frozen=True)
class PrunePolicy:
    """Union of keep-last-N and keep-newer-than-D-days."""

    keep_last: Optional[int] = None
    keep_days: Optional[int] = None


@dataclass(frozen=True)
class PruneResult:
    deleted: list[str]
    kept: list[str]


@dataclass(frozen=True)
class BackupProgress:
    """Cumulative progress at one instant (not a delta)."""

    processed_files: int
    total_files: int
    processed_bytes: int
    total_bytes: int
    current_path: Optional[str] = None


__all__ = [
    "Snapshot",
    "SnapshotListItem",
    "RepoConfig",
    "EncryptionMode",
    "EncryptionSettings",
    "BackupOptions",
    "PrunePolicy",
    "PruneResult",
    "BackupProgress",
    "format_timestamp",
    "parse_timestamp",
    "utcnow",
]
