"""RAG pipeline: index a project, keep it up to date, answer questions about it.

Indexing:  discover -> parse -> chunk -> embed -> store (-> save)
Querying:  embed question -> vector search -> LLM rerank -> parent context -> answer
"""

import asyncio
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..config import config as app_config
from ..errors import IndexingError, IndexingInProgressError, IndexNotReadyError, StoreLoadError
from ..llm import BatchEmbedder, CompletionConfig, Completer, Embedder
from ..logging_config import get_logger
from ..retry import with_retry, with_timeout
from ..tools.paths import get_allowed_base_path, validate_path_within_base
from .chunker import chunk_codebase, chunk_document, chunk_documents, chunk_entities
from .docs import DOCS_DIRECTORY, discover_document_files, parse_markdown_file
from .embedding_cache import EmbeddingCache
from .indexer import build_file_entry, build_manifest_entries, detect_file_changes, merge_manifest
from .parser import discover_files, parse_entities
from .retriever import format_contexts_for_prompt, rerank_with_llm, resolve_parent_chunks, sanitize_query
from .types import (
    INDEX_VERSION,
    MANIFEST_VERSION,
    Chunk,
    FileEntry,
    FileManifest,
    IncrementalIndexResult,
    IndexMetadata,
    IndexStats,
    RAGConfig,
    RAGQueryResult,
    SearchResult,
)
from .vectorstore import CodeVectorStore

logger = get_logger(__name__)

STORE_FILENAME = "rag-index.json"
NO_RESULTS_ANSWER = "No relevant code found for your query."

ANSWER_CONFIG = CompletionConfig(temperature=0.3, max_tokens=2048)

_ANSWER_PROMPT = """You are a code analysis assistant. Answer the user's question based on the code snippets provided.

USER QUESTION: {query}

RELEVANT CODE SNIPPETS:
{context}

Instructions:
- Provide a clear, concise answer based on the code snippets
- Reference snippets by number [1], [2], etc. when relevant
- If the snippets don't contain enough information to fully answer, say so
- Focus on accuracy over speculation"""


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _build_metadata(project_path: str | Path, chunks: list[Chunk]) -> IndexMetadata:
    return IndexMetadata(
        project_path=str(project_path),
        total_chunks=len(chunks),
        total_tokens=sum(c.token_count for c in chunks),
        indexed_at=_now_iso(),
        version=INDEX_VERSION,
    )


class RAGPipeline:
    """Owns a vector store and runs indexing and querying against it.

    At most one indexing operation runs at a time; starting another while
    one is in flight raises IndexingInProgressError instead of queueing.
    """

    def __init__(
        self,
        config: Optional[RAGConfig] = None,
        *,
        allowed_base: Optional[str | Path] = None,
        embedding_batch_size: Optional[int] = None,
        embedding_timeout_s: Optional[float] = None,
        cache: Optional[EmbeddingCache] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.config = config or RAGConfig()
        self._allowed_base = Path(allowed_base) if allowed_base is not None else None
        self.embedding_batch_size = embedding_batch_size or app_config["embedding"]["batch_size"]
        self.embedding_timeout_s = embedding_timeout_s or app_config["embedding"]["timeout_s"]
        self.cache = cache if cache is not None else EmbeddingCache()
        self.cancel_event = cancel_event
        self.store = CodeVectorStore(allowed_base=self._allowed_base)
        self._all_chunks: list[Chunk] = []
        self._lock = asyncio.Lock()

    @property
    def allowed_base(self) -> Path:
        return self._allowed_base if self._allowed_base is not None else get_allowed_base_path()

    @property
    def is_indexing(self) -> bool:
        return self._lock.locked()

    def _retry_kwargs(self) -> dict:
        retry = app_config["retry"]
        return {
            "max_retries": retry["max_retries"],
            "base_delay_ms": retry["base_delay_ms"],
            "max_delay_ms": retry["max_delay_ms"],
            "cancel_event": self.cancel_event,
        }

    def _discover(self, project_path: str | Path) -> tuple[list[str], list[str]]:
        root = validate_path_within_base(project_path, self.allowed_base)
        code_files = discover_files(root, allowed_base=self.allowed_base)
        doc_files = discover_document_files(root / DOCS_DIRECTORY)
        return code_files, doc_files

    def _chunk_file(self, file_path: str) -> list[Chunk]:
        if file_path.endswith(".md"):
            doc = parse_markdown_file(file_path, allowed_base=self.allowed_base)
            return chunk_document(doc, self.config)
        entities = parse_entities(file_path, allowed_base=self.allowed_base)
        return chunk_entities(entities, self.config)

    async def _embed_chunks(self, chunks: list[Chunk], embedder: BatchEmbedder) -> list[list[float]]:
        """Embed chunk contents in sequential batches, each retried and time-bounded."""
        embeddings: list[list[float]] = []
        batch_size = self.embedding_batch_size
        total_batches = (len(chunks) + batch_size - 1) // batch_size

        for start in range(0, len(chunks), batch_size):
            batch = [c.content for c in chunks[start:start + batch_size]]
            logger.info("Embedding batch %s/%s", start // batch_size + 1, total_batches)
            batch_embeddings = await with_retry(
                lambda: with_timeout(embedder.embed_batch(batch), self.embedding_timeout_s, "Batch embedding"),
                **self._retry_kwargs(),
            )
            if len(batch_embeddings) != len(batch):
                raise IndexingError(
                    f"Embedder returned {len(batch_embeddings)} embeddings for {len(batch)} texts"
                )
            embeddings.extend(list(e) for e in batch_embeddings)
        return embeddings

    def _save(self, store_path: Optional[str | Path]) -> None:
        if store_path is None:
            return
        full_path = Path(store_path) / STORE_FILENAME
        self.store.save(full_path)
        logger.info("Index saved to %s", full_path)

    async def index(
        self,
        project_path: str | Path,
        embedder: BatchEmbedder,
        store_path: Optional[str | Path] = None,
    ) -> IndexMetadata:
        """Build the index from scratch.

        Args:
            project_path: Project root (must be inside the allowed base)
            embedder: Embedding provider
            store_path: Directory to save ``rag-index.json`` to; not saved when None

        Returns:
            Metadata of the new index

        Raises:
            IndexingInProgressError: If another indexing operation is running
            IndexingError: If no source files or no chunks were found
        """
        if self._lock.locked():
            raise IndexingInProgressError("Indexing already in progress")
        async with self._lock:
            return await self._index(project_path, embedder, store_path)

    async def _index(self, project_path, embedder: BatchEmbedder, store_path) -> IndexMetadata:
        logger.info("Indexing project: %s", project_path)
        self._all_chunks = []
        self.store.clear()

        code_files, doc_files = self._discover(project_path)
        logger.info("Found %s source files", len(code_files))
        if not code_files:
            raise IndexingError(f"No source files found in {project_path}")

        # Files that parsed, including ones that produced no chunks
        parsed: list[str] = []

        def tracked(parse):
            def wrapper(file_path):
                result = parse(file_path, allowed_base=self.allowed_base)
                parsed.append(file_path)
                return result
            return wrapper

        code_chunks = chunk_codebase(code_files, self.config, parse=tracked(parse_entities))
        logger.info("Created %s code chunks", len(code_chunks))

        doc_chunks: list[Chunk] = []
        if doc_files:
            logger.info("Found %s documentation files in %s/", len(doc_files), DOCS_DIRECTORY)
            doc_chunks = chunk_documents(doc_files, self.config, parse=tracked(parse_markdown_file))
            logger.info("Created %s documentation chunks", len(doc_chunks))

        chunks = code_chunks + doc_chunks
        if not chunks:
            raise IndexingError("No chunks generated from files")

        embeddings = await self._embed_chunks(chunks, embedder)
        self.store.add_chunks(chunks, embeddings)
        self._all_chunks = self.store.get_all_chunks()

        metadata = _build_metadata(project_path, self._all_chunks)
        self.store.set_metadata(metadata)
        self.store.set_manifest(FileManifest(files=build_manifest_entries(self._all_chunks, parsed)))

        self._save(store_path)
        logger.info("Indexing complete: %s chunks, %s tokens", metadata.total_chunks, metadata.total_tokens)
        return metadata

    def load_index(self, store_path: str | Path) -> Optional[IndexMetadata]:
        """Load a saved index.

        Returns:
            The loaded metadata, or None when there is no usable index (missing
            file, unreadable or invalid file, or an index version mismatch)
        """
        full_path = Path(store_path) / STORE_FILENAME
        if not CodeVectorStore.exists(full_path):
            logger.info("No index found at %s", full_path)
            return None

        logger.info("Loading index from %s", full_path)
        try:
            self.store.load(full_path)
        except StoreLoadError as e:
            logger.warning("Could not load index, rebuild required: %s", e)
            self.clear()
            return None

        metadata = self.store.get_metadata()
        if metadata is None or metadata.version != INDEX_VERSION:
            logger.warning(
                "Index version mismatch: expected %s, got %s",
                INDEX_VERSION,
                metadata.version if metadata else None,
            )
            self.clear()
            return None

        self._all_chunks = self.store.get_all_chunks()
        logger.info("Loaded index: %s chunks from %s", metadata.total_chunks, metadata.project_path)
        return metadata

    async def index_incremental(
        self,
        project_path: str | Path,
        embedder: BatchEmbedder,
        store_path: Optional[str | Path] = None,
    ) -> IncrementalIndexResult:
        """Re-index only the files that changed since the last index.

        Falls back to a full ``index()`` when there is no manifest or its
        version differs. Unchanged files are never re-embedded.

        Raises:
            IndexingInProgressError: If another indexing operation is running
        """
        if self._lock.locked():
            raise IndexingInProgressError("Indexing already in progress")
        async with self._lock:
            return await self._index_incremental(project_path, embedder, store_path)

    async def _index_incremental(self, project_path, embedder: BatchEmbedder, store_path) -> IncrementalIndexResult:
        logger.info("Incremental indexing: %s", project_path)
        manifest = self.store.get_manifest()

        if manifest is None or manifest.version != MANIFEST_VERSION:
            if manifest is None:
                logger.info("No manifest found, running full index")
            else:
                logger.info(
                    "Manifest version mismatch (%s vs %s), forcing full reindex",
                    manifest.version,
                    MANIFEST_VERSION,
                )
            metadata = await self._index(project_path, embedder, store_path)
            indexed_files = len(self.store.get_manifest().files)
            return IncrementalIndexResult(
                metadata=metadata,
                stats=IndexStats(added=indexed_files),
                full_rebuild=True,
            )

        code_files, doc_files = self._discover(project_path)
        changes = detect_file_changes(code_files + doc_files, manifest)
        logger.info(
            "Changes: +%s ~%s -%s =%s",
            len(changes.added),
            len(changes.modified),
            len(changes.deleted),
            len(changes.unchanged),
        )

        if not changes.has_changes:
            logger.info("No changes detected")
            metadata = self.store.get_metadata()
            if metadata is None:
                raise IndexingError("No existing metadata found")
            return IncrementalIndexResult(
                metadata=metadata,
                stats=IndexStats(unchanged=len(changes.unchanged)),
            )

        for file_path in changes.deleted + changes.modified:
            self.store.remove_chunks_by_file(file_path)

        new_chunks: list[Chunk] = []
        processed: dict[str, FileEntry] = {}
        for file_path in changes.added + changes.modified:
            try:
                chunks = self._chunk_file(file_path)
                entry = build_file_entry(file_path, [c.id for c in chunks])
            except Exception as e:
                logger.warning("Failed to process %s: %s", file_path, e)
                continue
            new_chunks.extend(chunks)
            processed[file_path] = entry

        if new_chunks:
            embeddings = await self._embed_chunks(new_chunks, embedder)
            self.store.add_chunks(new_chunks, embeddings)

        self.store.set_manifest(merge_manifest(manifest, changes, processed))
        self._all_chunks = self.store.get_all_chunks()
        metadata = _build_metadata(project_path, self._all_chunks)
        self.store.set_metadata(metadata)

        self._save(store_path)
        return IncrementalIndexResult(
            metadata=metadata,
            stats=IndexStats(
                added=len(changes.added),
                modified=len(changes.modified),
                deleted=len(changes.deleted),
                unchanged=len(changes.unchanged),
            ),
        )

    async def _embed_query(self, query: str, embedder: Embedder) -> list[float]:
        return await with_retry(
            lambda: with_timeout(self.cache.get_or_embed(query, embedder), self.embedding_timeout_s, "Query embedding"),
            **self._retry_kwargs(),
        )

    async def retrieve(self, query: str, embedder: Embedder, completer: Completer) -> list[SearchResult]:
        """Vector search, rerank and parent resolution, without answer generation.

        Raises:
            IndexNotReadyError: If nothing has been indexed or loaded
        """
        if self.store.is_empty():
            raise IndexNotReadyError("Index is empty. Run index() or load_index() first.")

        query_embedding = await self._embed_query(query, embedder)
        vector_results = self.store.search(query_embedding, self.config.top_k)
        logger.info("Vector search returned %s results", len(vector_results))
        if not vector_results:
            return []

        reranked = await rerank_with_llm(vector_results, query, completer, self.config)
        logger.info("Reranked to %s results", len(reranked))
        return resolve_parent_chunks(reranked, self._all_chunks)

    async def query(self, query: str, embedder: Embedder, completer: Completer) -> RAGQueryResult:
        """Answer a question about the indexed code.

        Raises:
            IndexNotReadyError: If nothing has been indexed or loaded
        """
        logger.info("Processing query: %r", query[:50])
        sources = await self.retrieve(query, embedder, completer)
        if not sources:
            return RAGQueryResult(answer=NO_RESULTS_ANSWER, sources=[], token_count=0)

        prompt = _ANSWER_PROMPT.format(
            query=sanitize_query(query),
            context=format_contexts_for_prompt(sources),
        )
        result = await with_retry(lambda: completer.complete(prompt, ANSWER_CONFIG), **self._retry_kwargs())
        return RAGQueryResult(answer=result.text, sources=sources, token_count=result.token_count)

    def get_status(self) -> dict:
        metadata = self.store.get_metadata()
        manifest = self.store.get_manifest()
        return {
            "indexed": not self.store.is_empty(),
            "indexing": self.is_indexing,
            "total_chunks": self.store.size(),
            "total_tokens": metadata.total_tokens if metadata else 0,
            "indexed_at": metadata.indexed_at if metadata else None,
            "project_path": metadata.project_path if metadata else None,
            "embedding_dimension": self.store.get_embedding_dimension(),
            "tracked_files": len(manifest.files) if manifest else 0,
            "cache": self.cache.stats(),
        }

    def has_manifest(self) -> bool:
        return self.store.get_manifest() is not None

    def clear(self) -> None:
        self.store.clear()
        self._all_chunks = []
