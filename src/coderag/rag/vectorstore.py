"""In-memory vector store with brute-force cosine search and JSON persistence."""

from pathlib import Path
from typing import Optional, Sequence

import numpy as np
from pydantic import BaseModel, ValidationError

from ..errors import DimensionMismatchError, StoreError, StoreLoadError
from ..logging_config import get_logger
from ..tools.paths import get_allowed_base_path, validate_path_within_base
from .types import Chunk, FileManifest, IndexMetadata, SearchResult

logger = get_logger(__name__)

# Below this magnitude a vector is treated as zero
_ZERO_NORM = 1e-10


class _StoredChunk(BaseModel):
    chunk: Chunk
    embedding: list[float]


class _StoredIndex(BaseModel):
    """On-disk layout of a saved store."""

    metadata: IndexMetadata
    chunks: list[_StoredChunk]
    embedding_dimension: int
    manifest: Optional[FileManifest] = None


def normalize_vector(vector: Sequence[float]) -> np.ndarray:
    """Scale a vector to unit length; near-zero vectors become all zeros."""
    array = np.asarray(vector, dtype=np.float64)
    norm = float(np.linalg.norm(array))
    if norm < _ZERO_NORM:
        return np.zeros_like(array)
    return array / norm


class CodeVectorStore:
    """Chunks and their embeddings, searchable by cosine similarity.

    Embeddings are stored normalized, so similarity is a plain dot product.
    The first embedding accepted fixes the dimension for every later one
    until ``clear()``.
    """

    def __init__(self, allowed_base: Optional[str | Path] = None):
        self._allowed_base = Path(allowed_base) if allowed_base is not None else None
        self._chunks: list[Chunk] = []
        self._embeddings: list[np.ndarray] = []
        self._matrix: Optional[np.ndarray] = None
        self._id_index: dict[str, int] = {}
        self._file_index: dict[str, set[str]] = {}
        self._dimension = 0
        self._metadata: Optional[IndexMetadata] = None
        self._manifest: Optional[FileManifest] = None

    def _base_path(self) -> Path:
        return self._allowed_base if self._allowed_base is not None else get_allowed_base_path()

    def _rebuild_indices(self) -> None:
        self._id_index = {}
        self._file_index = {}
        for position, chunk in enumerate(self._chunks):
            self._id_index[chunk.id] = position
            self._file_index.setdefault(chunk.file_path, set()).add(chunk.id)
        self._matrix = None

    def add_chunks(self, chunks: Sequence[Chunk], embeddings: Sequence[Sequence[float]]) -> int:
        """Add chunks with their embeddings.

        All embeddings are checked before anything is inserted, so a bad
        batch leaves the store untouched. Chunks whose id is already present
        are skipped with a warning.

        Returns:
            Number of chunks inserted

        Raises:
            ValueError: If the two sequences differ in length or an embedding is empty
            DimensionMismatchError: If an embedding does not match the store dimension
        """
        if len(chunks) != len(embeddings):
            raise ValueError(
                f"Chunks and embeddings length mismatch: {len(chunks)} chunks, {len(embeddings)} embeddings"
            )
        if not chunks:
            return 0

        dimension = self._dimension
        if dimension == 0:
            dimension = len(embeddings[0])
            if dimension == 0:
                raise ValueError("Embedding dimension must be greater than 0")

        for i, embedding in enumerate(embeddings):
            if len(embedding) != dimension:
                raise DimensionMismatchError(dimension, len(embedding), f"Embedding at index {i}")

        self._dimension = dimension
        inserted = 0
        for chunk, embedding in zip(chunks, embeddings):
            if chunk.id in self._id_index:
                logger.warning("Duplicate chunk id %s (%s), skipping", chunk.id, chunk.name)
                continue
            vector = normalize_vector(embedding)
            if not vector.any():
                logger.warning("Zero-magnitude embedding for chunk %s", chunk.name)
            self._id_index[chunk.id] = len(self._chunks)
            self._file_index.setdefault(chunk.file_path, set()).add(chunk.id)
            self._chunks.append(chunk)
            self._embeddings.append(vector)
            inserted += 1

        self._matrix = None
        return inserted

    def search(self, query_embedding: Sequence[float], top_k: int = 10) -> list[SearchResult]:
        """Return the ``top_k`` chunks most similar to the query, best first.

        Raises:
            DimensionMismatchError: If the query does not match the store dimension
        """
        if not self._chunks:
            return []
        if len(query_embedding) != self._dimension:
            raise DimensionMismatchError(self._dimension, len(query_embedding), "Query embedding")

        if self._matrix is None:
            self._matrix = np.vstack(self._embeddings)

        scores = self._matrix @ normalize_vector(query_embedding)
        # Stable sort keeps insertion order among equal scores
        order = np.argsort(-scores, kind="stable")[:max(top_k, 0)]
        return [
            SearchResult(
                chunk=self._chunks[i],
                vector_score=float(scores[i]),
                final_score=float(scores[i]),
            )
            for i in order
        ]

    def get_chunk_by_id(self, chunk_id: str) -> Optional[Chunk]:
        position = self._id_index.get(chunk_id)
        return None if position is None else self._chunks[position]

    def remove_chunks(self, chunk_ids: Sequence[str]) -> int:
        """Remove chunks by id; unknown ids are ignored.

        Returns:
            Number of chunks removed
        """
        doomed = {chunk_id for chunk_id in chunk_ids if chunk_id in self._id_index}
        if not doomed:
            return 0

        kept = [(c, e) for c, e in zip(self._chunks, self._embeddings) if c.id not in doomed]
        self._chunks = [c for c, _ in kept]
        self._embeddings = [e for _, e in kept]
        self._rebuild_indices()
        return len(doomed)

    def remove_chunks_by_file(self, file_path: str) -> int:
        """Remove every chunk that came from ``file_path``."""
        ids = self._file_index.get(file_path)
        if not ids:
            return 0
        return self.remove_chunks(list(ids))

    def get_all_chunks(self) -> list[Chunk]:
        return list(self._chunks)

    def size(self) -> int:
        return len(self._chunks)

    def is_empty(self) -> bool:
        return not self._chunks

    def clear(self) -> None:
        """Drop all chunks, metadata and manifest, and reset the dimension."""
        self._chunks = []
        self._embeddings = []
        self._matrix = None
        self._id_index = {}
        self._file_index = {}
        self._dimension = 0
        self._metadata = None
        self._manifest = None

    def get_embedding_dimension(self) -> int:
        return self._dimension

    def set_metadata(self, metadata: IndexMetadata) -> None:
        self._metadata = metadata

    def get_metadata(self) -> Optional[IndexMetadata]:
        return self._metadata

    def set_manifest(self, manifest: Optional[FileManifest]) -> None:
        self._manifest = manifest

    def get_manifest(self) -> Optional[FileManifest]:
        return self._manifest

    def save(self, path: str | Path, compress: bool = False) -> None:
        """Write the store as JSON.

        Args:
            path: Destination file; must be inside the allowed base
            compress: Write minified JSON instead of indented

        Raises:
            StoreError: If no metadata has been set
            PathSecurityError: If the path escapes the allowed base
        """
        if self._metadata is None:
            raise StoreError("Cannot save store without metadata")

        target = validate_path_within_base(path, self._base_path())

        document = {
            "metadata": self._metadata,
            "chunks": [
                {"chunk": chunk.to_dict(), "embedding": embedding.tolist()}
                for chunk, embedding in zip(self._chunks, self._embeddings)
            ],
            "embedding_dimension": self._dimension,
        }
        if self._manifest is not None:
            document["manifest"] = self._manifest

        target.parent.mkdir(parents=True, exist_ok=True)
        payload = _StoredIndex.model_validate(document).model_dump_json(indent=None if compress else 2)
        target.write_text(payload, encoding="utf-8")
        logger.info("Saved %s chunks to %s", len(self._chunks), target)

    def load(self, path: str | Path) -> None:
        """Replace the store contents with a saved index.

        Raises:
            PathSecurityError: If the path escapes the allowed base
            StoreLoadError: If the file is unreadable, not JSON, or structurally invalid
        """
        source = validate_path_within_base(path, self._base_path())
        try:
            raw = source.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise StoreLoadError(f"Cannot read store {source}: {e}") from e

        try:
            stored = _StoredIndex.model_validate_json(raw)
        except ValidationError as e:
            raise StoreLoadError(f"Invalid store format in {source}: {e}") from e

        for i, entry in enumerate(stored.chunks):
            if len(entry.embedding) != stored.embedding_dimension:
                raise StoreLoadError(
                    f"Invalid store format in {source}: chunk {i} has embedding length "
                    f"{len(entry.embedding)}, expected {stored.embedding_dimension}"
                )

        self.clear()
        self._chunks = [entry.chunk for entry in stored.chunks]
        self._embeddings = [normalize_vector(entry.embedding) for entry in stored.chunks]
        self._dimension = stored.embedding_dimension
        self._metadata = stored.metadata
        self._manifest = stored.manifest
        self._rebuild_indices()
        logger.info("Loaded %s chunks from %s", len(self._chunks), source)

    @staticmethod
    def exists(path: str | Path) -> bool:
        return Path(path).is_file()
