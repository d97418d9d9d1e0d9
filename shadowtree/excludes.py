"""Exclude patterns for container-to-host transfers.

Patterns come from a built-in list (VCS metadata, dependency and cache
directories) plus the original repository's .gitignore, written out in rsync
`--exclude-from` syntax. The same list drives the host-side prune pass of the
archive fallback, so `is_excluded` understands the subset of that syntax the
list actually uses.
"""

from __future__ import annotations

import logging
from fnmatch import fnmatchcase
from pathlib import Path, PurePosixPath
from typing import Iterable, Optional, Sequence

logger = logging.getLogger("shadowtree.excludes")

BUILTIN_EXCLUDES = [
    ".git",
    ".git/**",
    "node_modules",
    "node_modules/**",
    ".next",
    ".next/**",
    "__pycache__",
    "__pycache__/**",
    ".venv",
    ".venv/**",
    "*.pyc",
    "*.pyo",
    ".DS_Store",
    "Thumbs.db",
]

# Written when .gitignore can't be read
BASIC_EXCLUDES = [".git", "node_modules", ".next", "__pycache__", ".venv"]


def gitignore_to_excludes(lines: Iterable[str]) -> list[str]:
    """Convert .gitignore lines to rsync exclude patterns.

    Negations are skipped. Directory patterns (trailing slash) also exclude
    their contents; bare names get a `**/` variant so they match at any depth.
    """
    patterns: list[str] = []
    for line in lines:
        trimmed = line.strip()
        if not trimmed or trimmed.startswith("#"):
            continue
        if trimmed.startswith("!"):
            continue

        if trimmed.endswith("/"):
            patterns.append(trimmed)
            patterns.append(trimmed + "**")
        else:
            patterns.append(trimmed)
            if "/" not in trimmed:
                patterns.append("**/" + trimmed)
    return patterns


def build_exclude_patterns(repo_path: Path, extra: Optional[Sequence[str]] = None) -> list[str]:
    """Build the full exclude list for a repository.

    Args:
        repo_path: Original repository (its .gitignore is read if present)
        extra: Additional patterns from config

    Returns:
        Ordered pattern list, built-ins first
    """
    patterns = list(BUILTIN_EXCLUDES)

    gitignore = repo_path / ".gitignore"
    if gitignore.exists():
        patterns.extend(gitignore_to_excludes(gitignore.read_text(encoding="utf-8").splitlines()))

    if extra:
        patterns.extend(extra)

    return patterns


def write_exclude_file(repo_path: Path, exclude_file: Path, extra: Optional[Sequence[str]] = None) -> list[str]:
    """Write the exclude file used by rsync and return the patterns written.

    Falls back to a minimal list if the .gitignore can't be read.
    """
    try:
        patterns = build_exclude_patterns(repo_path, extra)
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Could not read .gitignore excludes from %s: %s", repo_path, e)
        patterns = list(BASIC_EXCLUDES)

    exclude_file.parent.mkdir(parents=True, exist_ok=True)
    exclude_file.write_text("\n".join(patterns))
    logger.debug("Wrote %d exclude patterns to %s", len(patterns), exclude_file)
    return patterns


def _matches_anywhere(parts: Sequence[str], pattern: str) -> bool:
    pattern_parts = pattern.split("/")
    width = len(pattern_parts)
    for start in range(0, len(parts) - width + 1):
        window = parts[start:start + width]
        if all(fnmatchcase(part, pat) for part, pat in zip(window, pattern_parts)):
            return True
    return False


def _matches_anchored(parts: Sequence[str], pattern: str) -> bool:
    pattern_parts = pattern.split("/")
    if len(pattern_parts) > len(parts):
        return False
    return all(fnmatchcase(part, pat) for part, pat in zip(parts[:len(pattern_parts)], pattern_parts))


def is_excluded(relative_path: str, patterns: Iterable[str]) -> bool:
    """Check whether a file path (relative to the tree root) is excluded.

    A pattern that matches any leading directory of the path excludes the
    whole subtree, matching rsync's behaviour of never descending into an
    excluded directory.

    Args:
        relative_path: POSIX-style path of a file, relative to the tree root
        patterns: Exclude patterns (rsync syntax subset)

    Returns:
        True if the path should be skipped
    """
    parts = PurePosixPath(relative_path).parts
    if not parts:
        return False

    for raw in patterns:
        pattern = raw.strip()
        if not pattern or pattern.startswith("#"):
            continue

        anchored = False
        dir_only = False

        if pattern.startswith("/"):
            anchored = True
            pattern = pattern.lstrip("/")
        while pattern.startswith("**/"):
            pattern = pattern[3:]
        if pattern.endswith("/**"):
            pattern = pattern[:-3]
            dir_only = True
        if pattern.endswith("/"):
            pattern = pattern.rstrip("/")
            dir_only = True
        if not pattern:
            continue

        # Directory patterns only match leading components, never the file itself
        candidates = parts[:-1] if dir_only else parts
        if not candidates:
            continue

        if "/" in pattern or anchored:
            if raw.strip().startswith("**/"):
                if _matches_anywhere(candidates, pattern):
                    return True
            elif _matches_anchored(candidates, pattern):
                return True
        elif any(fnmatchcase(part, pattern) for part in candidates):
            return True

    return False
