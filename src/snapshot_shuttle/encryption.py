"""Certificate recipients for encrypted staging containers."""

from __future__ import annotations

import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.serialization import Encoding
from cryptography.x509.oid import NameOID

from snapshot_shuttle.errors import (
    CertificateNotFoundError,
    EncryptionError,
    NoRecipientsError,
    TempArtifactWriteError,
)
from snapshot_shuttle.logs import get_logger
from snapshot_shuttle.models import EncryptionSettings

log = get_logger("core.encryption")

CERTIFICATE_SUFFIXES = (".der", ".cer", ".crt", ".pem")


class CertificateResolver(ABC):
    """Turns recipient selectors into certificate files usable by a container."""

    @abstractmethod
    def resolve(self, selector: str) -> Path:
        pass

    def resolve_all(self, selectors: Iterable[str]) -> list[Path]:
        selectors = list(selectors)
        if not selectors:
            raise NoRecipientsError()
        return [self.resolve(s) for s in selectors]

    def cleanup(self) -> None:
        """Remove temporary artifacts created by ``resolve``."""


class StaticCertificateResolver(CertificateResolver):
    def __init__(self, mapping: Mapping[str, str | Path]):
        self._mapping = {k: Path(v) for k, v in mapping.items()}

    def resolve(self, selector: str) -> Path:
        path = self._mapping.get(selector)
        if path is None or not path.exists():
            raise CertificateNotFoundError(selector)
        return path


@dataclass
class _LoadedCertificate:
    path: Path
    certificate: x509.Certificate
    is_pem: bool

    @property
    def sha1(self) -> str:
        return self.certificate.fingerprint(hashes.SHA1()).hex()

    @property
    def common_names(self) -> list[str]:
        return [
            str(attr.value)
            for attr in self.certificate.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        ]


class CertificateDirectoryResolver(CertificateResolver):
    """
    Resolve selectors against certificates stored in a directory.

    Selectors: ``sha1:<hex>``, ``cn:<common name>``, ``label:<file stem>``;
    anything else is looked up as a common name. PEM files are converted
    to temporary DER files, removed by ``cleanup()``.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory).expanduser()
        self._certificates: Optional[list[_LoadedCertificate]] = None
        self._temp_files: list[Path] = []

    def _load(self) -> list[_LoadedCertificate]:
        if self._certificates is not None:
            return self._certificates
        loaded = []
        if self.directory.is_dir():
            for path in sorted(self.directory.iterdir()):
                if path.suffix.lower() not in CERTIFICATE_SUFFIXES or not path.is_file():
                    continue
                data = path.read_bytes()
                is_pem = data.lstrip().startswith(b"-----BEGIN")
                try:
                    if is_pem:
                        cert = x509.load_pem_x509_certificate(data)
                    else:
                        cert = x509.load_der_x509_certificate(data)
                except ValueError as e:
                    log.warning(f"Skipping unreadable certificate {path.name}: {e}")
                    continue
                loaded.append(_LoadedCertificate(path=path, certificate=cert, is_pem=is_pem))
        self._certificates = loaded
        return loaded

    def _find(self, selector: str) -> Optional[_LoadedCertificate]:
        kind, sep, value = selector.partition(":")
        if not sep or kind not in ("sha1", "cn", "label"):
            kind, value = "cn", selector
        value = value.strip()
        for entry in self._load():
            if kind == "sha1" and entry.sha1 == value.lower().replace(":", ""):
                return entry
            if kind == "cn" and value.lower() in (n.lower() for n in entry.common_names):
                return entry
            if kind == "label" and entry.path.stem == value:
                return entry
        return None

    def resolve(self, selector: str) -> Path:
        entry = self._find(selector)
        if entry is None:
            raise CertificateNotFoundError(selector)
        if not entry.is_pem:
            return entry.path
        try:
            fd, name = tempfile.mkstemp(prefix="bckp-cert-", suffix=".der")
            with os.fdopen(fd, "wb") as f:
                f.write(entry.certificate.public_bytes(Encoding.DER))
        except OSError as e:
            raise TempArtifactWriteError(f"Cannot write certificate for {selector}: {e}") from e
        path = Path(name)
        self._temp_files.append(path)
        return path

    def cleanup(self) -> None:
        for path in self._temp_files:
            try:
                path.unlink()
            except FileNotFoundError:
                pass
        self._temp_files.clear()


def container_encryption_args(
    settings: Optional[EncryptionSettings],
    resolver: Optional[CertificateResolver],
) -> list[str]:
    """Arguments for a disk-image tool; every recipient must resolve first."""
    if settings is None or not settings.enabled:
        return []
    if resolver is None:
        raise EncryptionError("Certificate encryption requested but no resolver is configured")
    args = ["-encryption", "AES-256"]
    for path in resolver.resolve_all(settings.recipients):
        args.extend(["-certificate", str(path)])
    return args
