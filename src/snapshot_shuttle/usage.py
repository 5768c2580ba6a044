import json
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Optional

from snapshot_shuttle.logs import get_logger
from snapshot_shuttle.models import format_timestamp, utcnow

log = get_logger("core.usage")

DEFAULT_USAGE_PATH = os.path.join(os.path.expanduser("~"), ".config", "bckp", "repositories.json")


@dataclass
class RepositoryUsage:
    type: str
    last_used_at: str
    sources: dict[str, str] = field(default_factory=dict)


class RepositoriesStore:
    """Recently used repositories, persisted as ``repositories.json``."""

    def __init__(self, path: str = DEFAULT_USAGE_PATH):
        self.path = path
        self._lock = threading.Lock()
        self._repos = self._load()

    def _load(self) -> dict[str, RepositoryUsage]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
            repos = {}
            for key, entry in (data.get("repositories") or {}).items():
                repos[key] = RepositoryUsage(
                    type=entry.get("type", "Local"),
                    last_used_at=entry.get("lastUsedAt", ""),
                    sources={
                        s["path"]: s.get("lastBackupAt", "") for s in entry.get("sources", [])
                    },
                )
        except (OSError, ValueError, AttributeError, KeyError, TypeError) as e:
            log.warning(f"Ignoring unreadable usage file {self.path}: {e}")
            return {}
        return repos

    def _save(self) -> None:
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        payload = {
            "repositories": {
                key: {
                    "type": usage.type,
                    "lastUsedAt": usage.last_used_at,
                    "sources": [
                        {"path": p, "lastBackupAt": ts} for p, ts in sorted(usage.sources.items())
                    ],
                }
                for key, usage in sorted(self._repos.items())
            }
        }
        tmp = self.path + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        os.replace(tmp, self.path)

    def record_used(
        self,
        key: str,
        repo_type: str,
        sources: Optional[Iterable[str]] = None,
        when: Optional[datetime] = None,
    ) -> None:
        stamp = format_timestamp(when or utcnow())
        with self._lock:
            usage = self._repos.get(key)
            if usage is None:
                usage = RepositoryUsage(type=repo_type, last_used_at=stamp)
                self._repos[key] = usage
            usage.type = repo_type
            usage.last_used_at = stamp
            for source in sources or ():
                usage.sources[source] = stamp
            self._save()

    def get(self, key: str) -> Optional[RepositoryUsage]:
        with self._lock:
            return self._repos.get(key)

    def recent(self) -> list[tuple[str, RepositoryUsage]]:
        with self._lock:
            return sorted(self._repos.items(), key=lambda kv: kv[1].last_used_at, reverse=True)
