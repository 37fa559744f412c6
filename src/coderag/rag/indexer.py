"""Change detection for incremental indexing.

A file is unchanged when its mtime matches the manifest. When the mtime
differs the content hash decides, so touching a file without editing it
never triggers re-embedding.
"""

import hashlib
import os
from pathlib import Path
from typing import Optional

from ..logging_config import get_logger
from .types import Chunk, FileChanges, FileEntry, FileManifest

logger = get_logger(__name__)


def compute_file_hash(file_path: str | Path) -> str:
    """SHA-256 hex digest of the file's bytes."""
    digest = hashlib.sha256()
    with open(file_path, "rb") as f:
        for block in iter(lambda: f.read(65536), b""):
            digest.update(block)
    return digest.hexdigest()


def get_file_mtime(file_path: str | Path) -> int:
    """Modification time in whole milliseconds."""
    return os.stat(file_path).st_mtime_ns // 1_000_000


def detect_file_changes(current_files: list[str], manifest: Optional[FileManifest]) -> FileChanges:
    """Diff the current file set against a manifest.

    Args:
        current_files: Files discovered now
        manifest: Manifest from the last index, or None (everything is added)

    Returns:
        Files grouped into added, modified, deleted and unchanged
    """
    changes = FileChanges()
    manifest_files = manifest.files if manifest is not None else {}
    current = set(current_files)

    for file_path in current_files:
        entry = manifest_files.get(file_path)
        if entry is None:
            changes.added.append(file_path)
            continue

        try:
            if get_file_mtime(file_path) == entry.mtime:
                changes.unchanged.append(file_path)
            elif compute_file_hash(file_path) != entry.content_hash:
                changes.modified.append(file_path)
            else:
                changes.unchanged.append(file_path)
        except OSError as e:
            logger.warning("File disappeared during change detection: %s (%s)", file_path, e)
            changes.deleted.append(file_path)

    for file_path in manifest_files:
        if file_path not in current:
            changes.deleted.append(file_path)

    return changes


def build_file_entry(file_path: str, chunk_ids: list[str]) -> FileEntry:
    """Record a file's current hash and mtime with the ids of its chunks.

    Raises:
        OSError: If the file cannot be read
    """
    return FileEntry(
        content_hash=compute_file_hash(file_path),
        chunk_ids=list(chunk_ids),
        mtime=get_file_mtime(file_path),
    )


def build_manifest_entries(chunks: list[Chunk], files: Optional[list[str]] = None) -> dict[str, FileEntry]:
    """Group chunk ids by file and record each file's hash and mtime.

    Args:
        chunks: Chunks of the index
        files: Files that were processed; those that produced no chunks
            (empty modules, for instance) still get an entry

    Files that can no longer be read are logged and left out.
    """
    ids_by_file: dict[str, list[str]] = {path: [] for path in files or []}
    for chunk in chunks:
        ids_by_file.setdefault(chunk.file_path, []).append(chunk.id)

    entries: dict[str, FileEntry] = {}
    for file_path, chunk_ids in ids_by_file.items():
        try:
            entries[file_path] = build_file_entry(file_path, chunk_ids)
        except OSError as e:
            logger.warning("Could not create manifest entry for %s: %s", file_path, e)
    return entries


def merge_manifest(previous: FileManifest, changes: FileChanges,
                   processed: dict[str, FileEntry]) -> FileManifest:
    """Combine kept entries for unchanged files with entries for processed files."""
    files = {
        path: previous.files[path]
        for path in changes.unchanged
        if path in previous.files
    }
    files.update(processed)
    return FileManifest(files=files)
