"""Data model for chunks, search results, index metadata and configuration.

- Entity: a named, line-ranged span produced by a parser, prior to chunking
- Chunk: the smallest retrievable unit, owned by the vector store
- SearchResult: a chunk with its vector / LLM / combined scores
- IndexMetadata, FileManifest: persisted bookkeeping for full and incremental indexing
- RAGConfig: validated, immutable tuning knobs for chunking and reranking
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

# Bump when the persisted layout or chunking semantics change
INDEX_VERSION = "1.1.0"
MANIFEST_VERSION = "1.0.0"


class ChunkKind(str, Enum):
    """What a chunk represents. Code kinds first, documentation kinds after."""
    FUNCTION = "function"
    CLASS = "class"
    INTERFACE = "interface"
    TYPE = "type"
    CONSTANT = "constant"
    FILE = "file"
    DOC_SECTION = "doc_section"
    DOC_PRD = "doc_prd"
    DOC_ADR = "doc_adr"
    DOC_API = "doc_api"
    DOC_NOTES = "doc_notes"


class DocType(str, Enum):
    """Document categories recognised under ai-docs/."""
    PRD = "prd"
    ADR = "adr"
    API = "api"
    NOTES = "notes"


@dataclass(frozen=True)
class Entity:
    """A named, line-ranged span of source produced by a parser."""

    name: str
    kind: ChunkKind
    code: str
    start_line: int
    end_line: int
    file_path: str


@dataclass(frozen=True)
class Chunk:
    """A retrievable unit of indexed content."""

    id: str
    content: str
    kind: ChunkKind
    name: str
    file_path: str
    start_line: int
    end_line: int
    token_count: int
    parent_id: Optional[str] = None  # Entity name when this is part of a split entity
    doc_type: Optional[DocType] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for display or storage."""
        return asdict(self)

    @property
    def location(self) -> str:
        return f"{self.file_path}:{self.start_line}"


@dataclass(frozen=True)
class SearchResult:
    """A chunk with its relevance scores."""

    chunk: Chunk
    vector_score: float
    final_score: float
    llm_score: Optional[float] = None

    def __str__(self) -> str:
        return f"{self.chunk.file_path}:{self.chunk.start_line}-{self.chunk.end_line} [{self.chunk.name}] (score: {self.final_score:.3f})"


@dataclass(frozen=True)
class IndexMetadata:
    """Summary of an index build."""

    project_path: str
    total_chunks: int
    total_tokens: int
    indexed_at: str
    version: str


@dataclass(frozen=True)
class FileEntry:
    """Per-file bookkeeping used for incremental indexing."""

    content_hash: str  # sha256 hex of the full file bytes
    chunk_ids: list[str]
    mtime: int  # Milliseconds, floored


@dataclass(frozen=True)
class FileManifest:
    """All file entries of an index plus the manifest format version."""

    files: dict[str, FileEntry] = field(default_factory=dict)
    version: str = MANIFEST_VERSION


@dataclass
class FileChanges:
    """Result of diffing the current file set against a manifest."""

    added: list[str] = field(default_factory=list)
    modified: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.added or self.modified or self.deleted)


@dataclass(frozen=True)
class IndexStats:
    added: int = 0
    modified: int = 0
    deleted: int = 0
    unchanged: int = 0


@dataclass(frozen=True)
class IncrementalIndexResult:
    metadata: IndexMetadata
    stats: IndexStats
    full_rebuild: bool = False


@dataclass(frozen=True)
class RAGQueryResult:
    """Answer generated from the reranked sources."""

    answer: str
    sources: list[SearchResult]
    token_count: int


class RAGConfig(BaseModel):
    """Chunking and reranking configuration.

    Constraints:
    - vector_weight + llm_weight must equal 1.0
    - chunk_overlap must be less than chunk_size
    - rerank_top_k must be <= top_k
    """

    model_config = ConfigDict(frozen=True)

    chunk_size: int = Field(default=300, gt=0, description="Maximum tokens per chunk")
    chunk_overlap: int = Field(default=50, ge=0, description="Overlap tokens between split chunks")
    top_k: int = Field(default=15, gt=0, description="Candidates from vector search")
    rerank_top_k: int = Field(default=5, gt=0, description="Results kept after reranking")
    vector_weight: float = Field(default=0.3, ge=0, le=1)
    llm_weight: float = Field(default=0.7, ge=0, le=1)

    @model_validator(mode="after")
    def _check_consistency(self) -> "RAGConfig":
        if abs(self.vector_weight + self.llm_weight - 1) >= 0.001:
            raise ValueError("vector_weight + llm_weight must equal 1.0")
        if self.chunk_overlap >= self.chunk_size:
            raise ValueError("chunk_overlap must be less than chunk_size")
        if self.rerank_top_k > self.top_k:
            raise ValueError("rerank_top_k must be <= top_k")
        return self
