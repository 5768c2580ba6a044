"""INI configuration and the engine context passed to every operation."""

from __future__ import annotations

import configparser
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Callable, Optional

from snapshot_shuttle.errors import ValidationError
from snapshot_shuttle.models import utcnow

if TYPE_CHECKING:
    from snapshot_shuttle.encryption import CertificateResolver
    from snapshot_shuttle.usage import RepositoriesStore

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "bckp"
CONFIG_ENV_VAR = "BCKP_CONFIG"


def default_config_path() -> Path:
    override = os.environ.get(CONFIG_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return DEFAULT_CONFIG_DIR / "config"


def _split_list(value: str) -> list[str]:
    return [v.strip() for v in value.split(",") if v.strip()]


@dataclass
class AppConfig:
    repo_path: Optional[str] = None
    include: list[str] = field(default_factory=list)
    exclude: list[str] = field(default_factory=list)
    concurrency: Optional[int] = None
    remote_url: Optional[str] = None
    logging_debug: bool = False


def load_config(path: Optional[str | Path] = None) -> AppConfig:
    """Read the INI file; a missing file yields defaults."""
    path = Path(path) if path else default_config_path()
    cfg = AppConfig()
    if not path.exists():
        return cfg

    parser = configparser.ConfigParser(interpolation=None)
    try:
        parser.read(path, encoding="utf-8")
    except configparser.Error as e:
        raise ValidationError(f"Invalid config file {path}: {e}") from e

    cfg.repo_path = parser.get("repo", "path", fallback=None) or None
    cfg.include = _split_list(parser.get("backup", "include", fallback=""))
    cfg.exclude = _split_list(parser.get("backup", "exclude", fallback=""))
    concurrency = parser.get("backup", "concurrency", fallback="").strip()
    if concurrency:
        try:
            cfg.concurrency = int(concurrency)
        except ValueError as e:
            raise ValidationError(f"Invalid concurrency in {path}: {concurrency}") from e
    cfg.remote_url = parser.get("remote", "url", fallback=None) or None
    try:
        cfg.logging_debug = parser.getboolean("logging", "debug", fallback=False)
    except ValueError as e:
        raise ValidationError(f"Invalid logging.debug in {path}: {e}") from e
    return cfg


def save_config(cfg: AppConfig, path: Optional[str | Path] = None) -> Path:
    path = Path(path) if path else default_config_path()
    parser = configparser.ConfigParser(interpolation=None)
    parser["repo"] = {}
    if cfg.repo_path:
        parser["repo"]["path"] = cfg.repo_path
    parser["backup"] = {
        "include": ",".join(cfg.include),
        "exclude": ",".join(cfg.exclude),
    }
    if cfg.concurrency is not None:
        parser["backup"]["concurrency"] = str(cfg.concurrency)
    parser["remote"] = {}
    if cfg.remote_url:
        parser["remote"]["url"] = cfg.remote_url
    parser["logging"] = {"debug": "true" if cfg.logging_debug else "false"}

    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        parser.write(f)
    return path


def default_mount_root() -> Path:
    return Path(tempfile.gettempdir()) / "bckp-mounts"


@dataclass
class EngineContext:
    """
    Collaborators for one process entry point.

    Built once (CLI or embedding code) and handed to backends; nothing in
    the engine reaches for module-level state instead.
    """

    config: AppConfig = field(default_factory=AppConfig)
    clock: Callable[[], datetime] = utcnow
    mount_root: Path = field(default_factory=default_mount_root)
    certificate_resolver: Optional["CertificateResolver"] = None
    usage: Optional["RepositoriesStore"] = None
    force_detach: bool = False
