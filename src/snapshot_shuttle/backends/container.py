"""Staging containers: mountable units a local snapshot is assembled in."""

from __future__ import annotations

import os
import shutil
import subprocess
import sys
import tarfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

import psutil

from snapshot_shuttle.encryption import CertificateResolver, container_encryption_args
from snapshot_shuttle.errors import (
    BackupError,
    ContainerCommandError,
    MountBusyError,
    UnsupportedPlatformError,
)
from snapshot_shuttle.logs import get_logger
from snapshot_shuttle.models import EncryptionSettings

log = get_logger("core.container")

MiB = 1024 * 1024
MIN_CAPACITY = 1 * MiB
MIN_HEADROOM = 64 * MiB
CAPACITY_ALIGNMENT = 8 * MiB


def container_capacity(total_bytes: int) -> int:
    """Payload plus max(64 MiB, 50%) headroom, at least 1 MiB, 8 MiB aligned."""
    headroom = max(MIN_HEADROOM, int(total_bytes * 0.5))
    raw = max(MIN_CAPACITY, total_bytes + headroom)
    return -(-raw // CAPACITY_ALIGNMENT) * CAPACITY_ALIGNMENT


def mount_is_busy(mount_point: str | Path) -> bool:
    """True when any visible process holds a file open under ``mount_point``."""
    prefix = os.path.realpath(str(mount_point)) + os.sep
    for proc in psutil.process_iter():
        try:
            files = proc.open_files()
        except (psutil.AccessDenied, psutil.NoSuchProcess, psutil.ZombieProcess):
            continue
        if any(os.path.realpath(f.path).startswith(prefix) for f in files):
            return True
    return False


class StagingContainer(ABC):
    """A container artifact that can be created, attached and detached."""

    extension: str = ""
    supports_encryption: bool = False

    def __init__(
        self,
        artifact: str | Path,
        mount_point: str | Path,
        busy_check: Callable[[Path], bool] = mount_is_busy,
    ):
        self.artifact = Path(artifact)
        self.mount_point = Path(mount_point)
        self.busy_check = busy_check

    @classmethod
    def for_snapshot(
        cls,
        snapshots_dir: str | Path,
        snapshot_id: str,
        mount_root: str | Path,
        purpose: str = "local",
        **kwargs,
    ) -> "StagingContainer":
        artifact = Path(snapshots_dir) / f"{snapshot_id}.{cls.extension}"
        mount_point = Path(mount_root) / f"bckp-{purpose}-{snapshot_id}"
        return cls(artifact, mount_point, **kwargs)

    @abstractmethod
    def create(
        self,
        size_hint: int,
        encryption: Optional[EncryptionSettings] = None,
        resolver: Optional[CertificateResolver] = None,
    ) -> None:
        pass

    @abstractmethod
    def attach(self, readonly: bool = False) -> Path:
        pass

    @abstractmethod
    def _release(self, force: bool) -> None:
        pass

    def detach(self, force: bool = False) -> None:
        """Detach; refuses while files are open under the mount point unless forced."""
        if not self.mount_point.exists():
            return
        if not force and self.busy_check(self.mount_point):
            raise MountBusyError(str(self.mount_point))
        self._release(force)
        log.debug(f"Detached {self.artifact.name} from {self.mount_point}")

    def exists(self) -> bool:
        return self.artifact.exists()

    def remove(self) -> None:
        if self.artifact.is_dir():
            shutil.rmtree(self.artifact)
        elif self.artifact.exists():
            self.artifact.unlink()

    @contextmanager
    def mounted(self, force: bool = False, readonly: bool = False) -> Iterator[Path]:
        path = self.attach(readonly=readonly)
        try:
            yield path
        except BaseException:
            try:
                self.detach(force=force)
            except BackupError as e:
                log.error(f"Detach after failure did not complete for {self.mount_point}: {e}")
            raise
        self.detach(force=force)


def _run(cmd: list[str]) -> subprocess.CompletedProcess:
    log.debug(f"Running {' '.join(cmd)}")
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except FileNotFoundError as e:
        raise UnsupportedPlatformError(f"{cmd[0]} is not available on this system") from e
    if result.returncode != 0:
        raise ContainerCommandError(
            f"{cmd[0]} {cmd[1]} failed ({result.returncode}): {result.stderr.strip()}"
        )
    return result


class SparseImageContainer(StagingContainer):
    """APFS sparse disk image managed through ``hdiutil`` (macOS)."""

    extension = "sparseimage"
    supports_encryption = True

    def create(self, size_hint, encryption=None, resolver=None):
        try:
            enc_args = container_encryption_args(encryption, resolver)
            self.artifact.parent.mkdir(parents=True, exist_ok=True)
            cmd = [
                "hdiutil", "create",
                "-type", "SPARSE",
                "-fs", "APFS",
                "-volname", f"bckp-{self.artifact.stem}",
                *enc_args,
                "-size", f"{max(1, size_hint // MiB)}m",
                str(self.artifact),
            ]
            _run(cmd)
        finally:
            if resolver is not None:
                resolver.cleanup()
        log.info(f"Created sparse image {self.artifact.name} ({size_hint // MiB} MiB)")

    def attach(self, readonly: bool = False) -> Path:
        self.mount_point.mkdir(parents=True, exist_ok=True)
        cmd = [
            "hdiutil", "attach", str(self.artifact),
            "-mountpoint", str(self.mount_point),
            "-owners", "on",
            "-noverify",
            "-nobrowse",
            "-plist",
        ]
        if readonly:
            cmd.append("-readonly")
        _run(cmd)
        return self.mount_point

    def _release(self, force: bool) -> None:
        cmd = ["hdiutil", "detach", str(self.mount_point)]
        if force:
            cmd.append("-force")
        _run(cmd)
        try:
            self.mount_point.rmdir()
        except OSError as e:
            log.debug(f"Left mount directory {self.mount_point} in place: {e}")


class ArchiveContainer(StagingContainer):
    """
    Portable container: a tar archive unpacked into a scratch directory.

    Attach extracts the archive into the mount point; detach packs the
    mount point back into the archive and removes the scratch directory.
    The size hint is recorded but not enforced. No encryption.
    """

    extension = "tar"

    def __init__(self, artifact, mount_point, busy_check=mount_is_busy):
        super().__init__(artifact, mount_point, busy_check)
        self.capacity: Optional[int] = None
        self._readonly = False

    def create(self, size_hint, encryption=None, resolver=None):
        if encryption is not None and encryption.enabled:
            raise UnsupportedPlatformError(
                "Tar staging containers cannot be encrypted; use a sparse image container"
            )
        self.capacity = size_hint
        self.artifact.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(self.artifact, "w"):
            pass
        log.info(f"Created archive container {self.artifact.name} ({size_hint // MiB} MiB hint)")

    def attach(self, readonly: bool = False) -> Path:
        if not self.artifact.exists():
            raise ContainerCommandError(f"Container artifact missing: {self.artifact}")
        if self.mount_point.exists():
            shutil.rmtree(self.mount_point)
        self.mount_point.mkdir(parents=True)
        try:
            with tarfile.open(self.artifact, "r") as tar:
                tar.extractall(self.mount_point, filter="tar")
        except (tarfile.TarError, OSError) as e:
            shutil.rmtree(self.mount_point, ignore_errors=True)
            raise ContainerCommandError(f"Cannot attach {self.artifact}: {e}") from e
        self._readonly = readonly
        return self.mount_point

    def _release(self, force: bool) -> None:
        if self._readonly:
            shutil.rmtree(self.mount_point)
            return
        partial = self.artifact.with_name(self.artifact.name + ".partial")
        try:
            with tarfile.open(partial, "w") as tar:
                for child in sorted(self.mount_point.iterdir()):
                    tar.add(child, arcname=child.name)
            os.replace(partial, self.artifact)
        except (tarfile.TarError, OSError) as e:
            if partial.exists():
                partial.unlink()
            raise ContainerCommandError(f"Cannot detach {self.artifact}: {e}") from e
        shutil.rmtree(self.mount_point)


CONTAINER_TYPES: dict[str, type[StagingContainer]] = {
    SparseImageContainer.extension: SparseImageContainer,
    ArchiveContainer.extension: ArchiveContainer,
}


def default_container_type() -> type[StagingContainer]:
    if sys.platform == "darwin" and shutil.which("hdiutil"):
        return SparseImageContainer
    return ArchiveContainer
