"""Ignore-pattern support (.gitignore and .rag-ignore) for file discovery."""

import re
from pathlib import Path

from ..logging_config import get_logger

logger = get_logger(__name__)

IgnorePattern = tuple[re.Pattern, bool, bool]

IGNORE_FILES = (".gitignore", ".rag-ignore")


def _parse_pattern(line: str) -> tuple[str | None, bool, bool]:
    """Translate one gitignore line into a regex.

    Returns:
        (regex_pattern, is_directory_pattern, negated), or (None, False, False)
        for blank lines and comments
    """
    pattern = line.strip()
    if not pattern or pattern.startswith("#"):
        return None, False, False

    negated = pattern.startswith("!")
    if negated:
        pattern = pattern[1:]

    is_dir = pattern.endswith("/")
    if is_dir:
        pattern = pattern[:-1]

    pattern = re.escape(pattern)
    pattern = pattern.replace(r"\*\*", "DOUBLE_STAR")
    pattern = pattern.replace(r"\*", r"[^/]*")
    pattern = pattern.replace(r"\?", r"[^/]")
    pattern = pattern.replace("DOUBLE_STAR", r".*")

    if pattern.startswith("/"):
        pattern = "^" + pattern[1:]
    else:
        pattern = "(^|/)" + pattern

    # Directory patterns match the directory itself and everything below it
    pattern = pattern + ("(/|$)" if is_dir else "$")
    return pattern, is_dir, negated


def _load_pattern_file(path: Path) -> list[IgnorePattern]:
    patterns: list[IgnorePattern] = []
    if not path.is_file():
        return patterns
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning("Could not read %s: %s", path, e)
        return patterns

    for line in lines:
        pattern_str, is_dir, negated = _parse_pattern(line)
        if pattern_str is None:
            continue
        try:
            patterns.append((re.compile(pattern_str), is_dir, negated))
        except re.error:
            logger.debug("Skipping invalid ignore pattern in %s: %r", path, line)
    return patterns


def load_ignore_patterns(repo_root: Path) -> list[IgnorePattern]:
    """Load patterns from .gitignore followed by .rag-ignore.

    Later patterns win, so .rag-ignore can re-include files with ``!``.
    """
    patterns: list[IgnorePattern] = []
    for name in IGNORE_FILES:
        patterns.extend(_load_pattern_file(repo_root / name))
    return patterns


def should_ignore(path: Path, repo_root: Path, patterns: list[IgnorePattern] | None = None) -> bool:
    """Check a path against ignore patterns.

    Args:
        path: Absolute path, or one relative to the repo root
        repo_root: Root of the repository
        patterns: Pre-loaded patterns (loaded from the root when None)

    Returns:
        True if the path should be ignored
    """
    if patterns is None:
        patterns = load_ignore_patterns(repo_root)

    if path.is_absolute():
        try:
            rel_path = path.relative_to(repo_root)
        except ValueError:
            return False
    else:
        rel_path = path

    rel_path_str = rel_path.as_posix()
    ignored = False
    for pattern, _is_dir, negated in patterns:
        if pattern.search(rel_path_str):
            ignored = not negated
    return ignored
