"""RAG (Retrieval-Augmented Generation) engine for source code.

This module chunks a codebase into semantic units, embeds them into an
in-memory vector store, keeps the index current incrementally and answers
questions with hybrid vector + LLM reranking.
"""

from .chunker import chunk_codebase, chunk_document, chunk_entities, estimate_tokens
from .embedding_cache import EmbeddingCache
from .indexer import detect_file_changes
from .pipeline import RAGPipeline
from .retriever import get_query_weights, rerank_with_llm, resolve_parent_chunks, sanitize_query
from .types import Chunk, ChunkKind, IndexMetadata, RAGConfig, SearchResult
from .vectorstore import CodeVectorStore

__all__ = [
    "chunk_codebase",
    "chunk_document",
    "chunk_entities",
    "estimate_tokens",
    "EmbeddingCache",
    "detect_file_changes",
    "RAGPipeline",
    "get_query_weights",
    "rerank_with_llm",
    "resolve_parent_chunks",
    "sanitize_query",
    "Chunk",
    "ChunkKind",
    "IndexMetadata",
    "RAGConfig",
    "SearchResult",
    "CodeVectorStore",
]
