"""Glob filters and per-source ignore files."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Iterable, Sequence

from snapshot_shuttle.errors import PlanningError
from snapshot_shuttle.logs import get_logger
from snapshot_shuttle.models import BackupOptions

IGNORE_FILE_NAME = ".bckpignore"

log = get_logger("core.filters")


def glob_to_regex(pattern: str) -> str:
    """
    Translate a glob into an anchored regular expression.

    ``**`` matches anything including ``/``; ``*`` matches within one path
    segment. Every other character is literal.
    """
    out = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**", i):
            out.append(".*")
            i += 2
        elif pattern[i] == "*":
            out.append("[^/]*")
            i += 1
        else:
            out.append(re.escape(pattern[i]))
            i += 1
    return "^" + "".join(out) + "$"


@lru_cache(maxsize=1024)
def _compile(pattern: str) -> re.Pattern:
    return re.compile(glob_to_regex(pattern))


def match(patterns: Iterable[str], path: str) -> bool:
    return any(_compile(p).match(path) for p in patterns)


def is_included(
    path: str,
    include: Sequence[str],
    exclude: Sequence[str],
    reinclude: Sequence[str] = (),
) -> bool:
    if include and not match(include, path):
        return False
    if match(exclude, path) and not match(reinclude, path):
        return False
    return True


@dataclass
class IgnoreRules:
    include: list[str] = field(default_factory=list)
    exclude: list[str] = field(default_factory=list)
    reinclude: list[str] = field(default_factory=list)


def _directive(line: str, name: str) -> str | None:
    lowered = line.lower()
    if not lowered.startswith(name):
        return None
    rest = line[len(name):]
    if rest.startswith(":") or rest.startswith(" "):
        return rest[1:].strip()
    return None


def parse_ignore_text(text: str) -> IgnoreRules:
    """
    Parse ignore-file content.

    Lines are comments (``#``), blanks, re-includes (``!pattern``),
    ``include:``/``exclude:`` directives (a space works as separator too)
    or bare patterns, which count as excludes.
    """
    rules = IgnoreRules()
    for raw in text.splitlines():
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("!"):
            pattern = line[1:].strip()
            if pattern:
                rules.reinclude.append(pattern)
            continue
        value = _directive(line, "include")
        if value is not None:
            if value:
                rules.include.append(value)
            continue
        value = _directive(line, "exclude")
        if value is not None:
            if value:
                rules.exclude.append(value)
            continue
        rules.exclude.append(line)
    return rules


def parse_ignore_file(path: str) -> IgnoreRules:
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read()
    except FileNotFoundError:
        return IgnoreRules()
    except (OSError, UnicodeDecodeError) as e:
        raise PlanningError(f"Cannot read ignore file {path}: {e}") from e
    return parse_ignore_text(text)


@dataclass(frozen=True)
class SourceFilter:
    """Effective filter for one source root."""

    include: tuple[str, ...] = ()
    exclude: tuple[str, ...] = ()
    reinclude: tuple[str, ...] = ()

    def accepts(self, relative_path: str) -> bool:
        return is_included(relative_path, self.include, self.exclude, self.reinclude)

    def prunes_directory(self, relative_path: str) -> bool:
        # include patterns never apply to directories
        return match(self.exclude, relative_path) and not match(
            self.reinclude, relative_path
        )


def resolve_source_filter(source_root: str, options: BackupOptions) -> SourceFilter:
    """
    Combine global options with the source's ignore file, if any.

    Each of the include and exclude lists is taken from the ignore file when
    the file defines it, otherwise from ``options``.
    """
    rules = parse_ignore_file(os.path.join(source_root, IGNORE_FILE_NAME))
    if rules.include or rules.exclude:
        log.debug(
            f"Using {IGNORE_FILE_NAME} filters for {source_root} "
            f"({len(rules.include)} include, {len(rules.exclude)} exclude)"
        )
    return SourceFilter(
        include=tuple(rules.include or options.include),
        exclude=tuple(rules.exclude or options.exclude),
        reinclude=tuple(rules.reinclude),
    )
