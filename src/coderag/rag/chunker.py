"""Chunking that preserves semantic units.

Entities (functions, classes, constants) and documentation sections become
chunks. Anything over the token budget is split on line (or paragraph)
boundaries with overlap, and each piece remembers the entity it came from.
"""

import math
import re
import uuid
from pathlib import Path
from typing import Callable, Optional

from ..logging_config import get_logger
from .docs import DocSection, ParsedDocument, parse_markdown_file
from .parser import parse_entities
from .types import Chunk, ChunkKind, DocType, Entity, RAGConfig

logger = get_logger(__name__)

# Rough average for source code and English prose
CHARS_PER_TOKEN = 4

_DOC_KINDS = {
    DocType.PRD: ChunkKind.DOC_PRD,
    DocType.ADR: ChunkKind.DOC_ADR,
    DocType.API: ChunkKind.DOC_API,
    DocType.NOTES: ChunkKind.DOC_NOTES,
}

_PARAGRAPH_BREAK = re.compile(r"\n\n+")


def estimate_tokens(text: str) -> int:
    """Approximate token count: one token per four characters, rounded up.

    Deterministic and tokenizer-independent; not an exact model count.
    """
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def _new_id() -> str:
    return uuid.uuid4().hex


def _split_windows(parts: list[str], separator: str, budget: int, overlap: int,
                   reserved: int = 0) -> list[tuple[int, int]]:
    """Group consecutive parts into windows that fit ``budget`` tokens.

    Each new window starts with the last ``max(1, ceil(overlap / avg))``
    parts of the previous one, where ``avg`` is that window's average tokens
    per part. The overlap never covers the whole previous window, so a window
    holding a single part is followed by one that starts fresh.

    Returns:
        (start, end) index pairs into ``parts``, end exclusive
    """
    windows: list[tuple[int, int]] = []
    start = 0
    tokens = 0

    for i, part in enumerate(parts):
        part_tokens = estimate_tokens(part)
        if tokens + part_tokens + reserved > budget and i > start:
            windows.append((start, i))
            count = i - start
            avg = tokens / count
            keep = max(1, math.ceil(overlap / avg)) if avg > 0 else 1
            keep = min(keep, count - 1)
            start = i - keep
            tokens = estimate_tokens(separator.join(parts[start:i]))
        tokens += part_tokens

    if start < len(parts):
        windows.append((start, len(parts)))
    return windows


def _entity_chunk(entity: Entity, content: str, start_line: int, end_line: int,
                  index: Optional[int] = None) -> Chunk:
    return Chunk(
        id=_new_id(),
        content=content,
        kind=entity.kind,
        name=entity.name if index is None else f"{entity.name}[{index}]",
        file_path=entity.file_path,
        start_line=start_line,
        end_line=end_line,
        token_count=estimate_tokens(content),
        parent_id=None if index is None else entity.name,
    )


def _split_entity(entity: Entity, config: RAGConfig) -> list[Chunk]:
    lines = entity.code.split("\n")
    if len(lines) == 1:
        return [_entity_chunk(entity, entity.code, entity.start_line, entity.end_line)]

    windows = _split_windows(lines, "\n", config.chunk_size, config.chunk_overlap)
    if len(windows) == 1:
        return [_entity_chunk(entity, entity.code, entity.start_line, entity.end_line)]

    return [
        _entity_chunk(
            entity,
            "\n".join(lines[start:end]),
            entity.start_line + start,
            entity.start_line + end - 1,
            index,
        )
        for index, (start, end) in enumerate(windows)
    ]


def chunk_entities(entities: list[Entity], config: Optional[RAGConfig] = None) -> list[Chunk]:
    """Convert entities to chunks, splitting the ones over the token budget.

    Args:
        entities: Parsed entities
        config: Chunk size and overlap (defaults when None)

    Returns:
        Chunks in entity order; split pieces are named ``name[i]`` and carry
        ``parent_id`` set to the entity name
    """
    config = config or RAGConfig()
    chunks: list[Chunk] = []
    for entity in entities:
        if estimate_tokens(entity.code) <= config.chunk_size:
            chunks.append(_entity_chunk(entity, entity.code, entity.start_line, entity.end_line))
        else:
            chunks.extend(_split_entity(entity, config))
    return chunks


def _doc_chunk(section: DocSection, doc: ParsedDocument, body: str,
               index: Optional[int] = None) -> Chunk:
    content = f"# {section.heading}\n\n{body}"
    return Chunk(
        id=_new_id(),
        content=content,
        kind=_DOC_KINDS[doc.doc_type],
        name=section.heading if index is None else f"{section.heading}[{index}]",
        file_path=doc.file_path,
        start_line=section.start_line,
        end_line=section.end_line,
        token_count=estimate_tokens(content),
        parent_id=None if index is None else section.heading,
        doc_type=doc.doc_type,
    )


def chunk_document(doc: ParsedDocument, config: Optional[RAGConfig] = None) -> list[Chunk]:
    """Convert the sections of a markdown document to chunks.

    Oversized sections are split by paragraph; the repeated heading counts
    against every piece's budget.
    """
    config = config or RAGConfig()
    chunks: list[Chunk] = []

    for section in doc.sections:
        if not section.heading.strip() and not section.content.strip():
            continue

        if estimate_tokens(f"# {section.heading}\n\n{section.content}") <= config.chunk_size:
            chunks.append(_doc_chunk(section, doc, section.content))
            continue

        paragraphs = [p for p in _PARAGRAPH_BREAK.split(section.content) if p.strip()]
        reserved = estimate_tokens(f"# {section.heading}\n\n")
        windows = _split_windows(paragraphs, "\n\n", config.chunk_size, config.chunk_overlap, reserved)

        if len(windows) <= 1:
            chunks.append(_doc_chunk(section, doc, section.content))
            continue

        for index, (start, end) in enumerate(windows):
            chunks.append(_doc_chunk(section, doc, "\n\n".join(paragraphs[start:end]), index))

    return chunks


def chunk_codebase(
    files: list[str],
    config: Optional[RAGConfig] = None,
    parse: Callable[[str], list[Entity]] = parse_entities,
) -> list[Chunk]:
    """Parse and chunk every file.

    A file that fails to parse is logged and skipped; the rest still get
    chunked.

    Args:
        files: Source file paths
        config: Chunking configuration
        parse: Entity producer, one call per file

    Returns:
        All chunks, in file order
    """
    all_chunks: list[Chunk] = []
    for file_path in files:
        try:
            entities = parse(file_path)
        except Exception as e:
            logger.warning("Failed to parse %s: %s", file_path, e)
            continue
        all_chunks.extend(chunk_entities(entities, config))

    logger.debug("Chunked %s files into %s chunks", len(files), len(all_chunks))
    return all_chunks


def chunk_documents(doc_files: list[str], config: Optional[RAGConfig] = None,
                    parse: Optional[Callable[[str], ParsedDocument]] = None) -> list[Chunk]:
    """Parse and chunk markdown documents, skipping unreadable ones."""
    parse = parse or parse_markdown_file
    chunks: list[Chunk] = []
    for file_path in doc_files:
        try:
            doc = parse(file_path)
        except Exception as e:
            logger.warning("Failed to parse document %s: %s", Path(file_path).name, e)
            continue
        chunks.extend(chunk_document(doc, config))
    return chunks
