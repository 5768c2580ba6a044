"""Planning: walk source trees and turn them into work items."""

from __future__ import annotations

import os
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

from snapshot_shuttle.errors import PlanningError, SourceNotADirectoryError
from snapshot_shuttle.filters import SourceFilter, resolve_source_filter
from snapshot_shuttle.logs import get_logger
from snapshot_shuttle.models import BackupOptions

log = get_logger("core.planner")


class WorkKind(str, Enum):
    FILE = "file"
    SYMLINK = "symlink"


@dataclass(frozen=True)
class WorkItem:
    source: str
    dest_key: str
    relative_path: str
    kind: WorkKind = WorkKind.FILE
    size: int = 0
    link_target: Optional[str] = None


@dataclass
class Plan:
    sources: list[str]
    items: list[WorkItem] = field(default_factory=list)
    total_files: int = 0
    total_bytes: int = 0

    def add(self, item: WorkItem) -> None:
        self.items.append(item)
        if item.kind is WorkKind.FILE:
            self.total_files += 1
            self.total_bytes += item.size

    @property
    def symlinks(self) -> list[WorkItem]:
        return [i for i in self.items if i.kind is WorkKind.SYMLINK]


def validate_sources(sources: Sequence[str]) -> list[str]:
    """Return absolute source paths; every source must be a directory."""
    roots = []
    for source in sources:
        root = os.path.abspath(os.path.expanduser(source))
        if not os.path.isdir(root):
            raise SourceNotADirectoryError(source)
        roots.append(root)
    return roots


def source_basename(root: str) -> str:
    return os.path.basename(root.rstrip(os.sep)) or "root"


def _to_key(path: str) -> str:
    return path.replace(os.sep, "/")


def relative_path(child: str, base: str) -> str:
    """
    Path of ``child`` relative to ``base`` using ``/`` separators.

    Retries with both sides resolved when a symlinked ancestor makes the
    plain computation escape ``base``; as a last resort only the final
    segment of ``child`` is used so no absolute path leaks out.
    """
    for a, b in ((child, base), (os.path.realpath(child), os.path.realpath(base))):
        try:
            rel = os.path.relpath(a, b)
        except ValueError:
            continue
        if not os.path.isabs(rel) and rel != ".." and not rel.startswith(".." + os.sep):
            return _to_key(rel)
    log.warning(f"Could not relativize {child} against {base}; using its name")
    return os.path.basename(child)


def _walk_source(root: str, flt: SourceFilter, plan: Plan, dest_prefix: str) -> None:
    base = source_basename(root)
    pending = [root]
    while pending:
        current = pending.pop()
        try:
            with os.scandir(current) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            raise PlanningError(f"Cannot read directory {current}: {e}") from e

        subdirs = []
        for entry in entries:
            if entry.name.startswith("."):
                continue
            rel = relative_path(entry.path, root)
            key = f"{dest_prefix}{base}/{rel}"
            try:
                if entry.is_symlink():
                    if flt.accepts(rel):
                        plan.add(
                            WorkItem(
                                source=entry.path,
                                dest_key=key,
                                relative_path=rel,
                                kind=WorkKind.SYMLINK,
                                link_target=os.readlink(entry.path),
                            )
                        )
                elif entry.is_dir(follow_symlinks=False):
                    if flt.prunes_directory(rel):
                        log.debug(f"Skipping excluded directory {rel}")
                    else:
                        subdirs.append(entry.path)
                elif entry.is_file(follow_symlinks=False):
                    if flt.accepts(rel):
                        size = entry.stat(follow_symlinks=False).st_size
                        plan.add(
                            WorkItem(
                                source=entry.path,
                                dest_key=key,
                                relative_path=rel,
                                size=size,
                            )
                        )
                else:
                    log.debug(f"Skipping special file {entry.path}")
            except OSError as e:
                raise PlanningError(f"Cannot inspect {entry.path}: {e}") from e

        # reversed so the stack pops directories in name order
        pending.extend(reversed(subdirs))


def plan_backup(
    sources: Sequence[str],
    options: Optional[BackupOptions] = None,
    dest_prefix: str = "",
) -> Plan:
    """
    Walk every source once and collect work items and totals.

    Planning is read-only. ``dest_prefix`` is prepended to each item's
    destination key, which otherwise reads ``<source-basename>/<relative>``.
    """
    options = options or BackupOptions()
    roots = validate_sources(sources)

    duplicates = [n for n, c in Counter(source_basename(r) for r in roots).items() if c > 1]
    if duplicates:
        log.warning(f"Sources share a basename and will merge: {', '.join(duplicates)}")

    plan = Plan(sources=roots)
    for root in roots:
        flt = resolve_source_filter(root, options)
        _walk_source(root, flt, plan, dest_prefix)

    log.info(
        f"Planned {plan.total_files} files ({plan.total_bytes} bytes), "
        f"{len(plan.symlinks)} symlinks from {len(roots)} source(s)"
    )
    return plan
