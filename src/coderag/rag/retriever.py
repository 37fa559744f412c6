"""Hybrid reranking of vector search results.

Each candidate is scored by the LLM for relevance to the question, and the
final score blends that with vector similarity:

    final = vector_weight * vector_score + llm_weight * llm_score

The weights depend on the question's intent. Queries are sanitized before
they are put into any prompt.
"""

import asyncio
import re
import unicodedata
from dataclasses import replace
from typing import Optional

from ..llm import CompletionConfig, Completer
from ..logging_config import get_logger
from ..retry import with_timeout
from .types import Chunk, RAGConfig, SearchResult

logger = get_logger(__name__)

SCORING_BATCH_SIZE = 5
DEFAULT_LLM_SCORE = 0.5
MAX_CONTENT_FOR_SCORING = 1000
MAX_QUERY_LENGTH = 2000
CHUNK_SCORING_TIMEOUT_S = 15.0

SCORING_CONFIG = CompletionConfig(temperature=0, max_tokens=10)

FILTERED = "[filtered]"

# Russian forms are matched without word boundaries
_SEARCH_INTENT = re.compile(r"\b(find|where|locate|show me|get|search|look for)\b|найди|где|покажи", re.IGNORECASE)
_EXPLAIN_INTENT = re.compile(r"\b(explain|how|why|what does|describe)\b|объясни|как|почему|что делает", re.IGNORECASE)

_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")
_INVISIBLE_CHARS = re.compile(r"[\u200B-\u200F\u2028-\u202F\uFEFF]")

_INJECTION_PATTERNS = [
    (re.compile(r"ignore\s+(all\s+)?(previous|above|prior)\s+(instructions?|prompts?|context)", re.IGNORECASE), FILTERED),
    (re.compile(r"disregard\s+(all\s+)?(previous|above|prior)\s+(instructions?|prompts?)", re.IGNORECASE), FILTERED),
    (re.compile(r"forget\s+(your\s+)?(role|instructions|purpose|training)", re.IGNORECASE), FILTERED),
    (re.compile(r"you\s+are\s+now\s+", re.IGNORECASE), FILTERED + " "),
    (re.compile(r"new\s+instructions?\s*:", re.IGNORECASE), FILTERED),
    (re.compile(r"</?(system|human|assistant|user)>", re.IGNORECASE), FILTERED),
    (re.compile(r"\b(Human|Assistant|System|User|AI):\s*", re.IGNORECASE), FILTERED + " "),
]

_SCORE = re.compile(r"^\d+(\.\d+)?$")

_SCORING_PROMPT = """You are a code relevance scorer. Rate how relevant the following code snippet is to the user's question.

USER QUESTION: {query}

CODE SNIPPET ({kind} "{name}" from {file_path}):
```
{content}
```

Rate the relevance on a scale of 0 to 10, where:
- 0: Completely irrelevant
- 5: Somewhat related
- 10: Directly answers the question

Respond with ONLY a number from 0 to 10, nothing else."""


def get_query_weights(query: str) -> tuple[float, float]:
    """Pick (vector_weight, llm_weight) from the question's intent.

    "Find/where" questions lean on vector similarity, "explain/how"
    questions lean on the LLM's judgement. These take precedence over the
    weights in RAGConfig.
    """
    if _SEARCH_INTENT.search(query):
        return 0.6, 0.4
    if _EXPLAIN_INTENT.search(query):
        return 0.2, 0.8
    return 0.3, 0.7


def sanitize_query(query: str) -> str:
    """Make a user question safe to embed in an LLM prompt.

    NFKC-normalizes (folding look-alike characters), strips control and
    zero-width characters, replaces instruction-override phrases and role
    markers with ``[filtered]``, caps the length and escapes code fences.
    """
    sanitized = unicodedata.normalize("NFKC", query)
    sanitized = _CONTROL_CHARS.sub("", sanitized)
    sanitized = _INVISIBLE_CHARS.sub("", sanitized)

    for pattern, replacement in _INJECTION_PATTERNS:
        sanitized = pattern.sub(replacement, sanitized)

    sanitized = sanitized[:MAX_QUERY_LENGTH]
    sanitized = sanitized.replace("```", "\\`\\`\\`")
    return sanitized.strip()


def parse_score_response(text: str) -> Optional[float]:
    """Parse a bare 0-10 number; anything else is None."""
    score_text = text.strip()
    if not _SCORE.match(score_text):
        return None
    score = float(score_text)
    if score < 0 or score > 10:
        return None
    return score


def build_scoring_prompt(chunk: Chunk, query: str) -> str:
    return _SCORING_PROMPT.format(
        query=sanitize_query(query),
        kind=chunk.kind.value,
        name=chunk.name,
        file_path=chunk.file_path,
        content=chunk.content[:MAX_CONTENT_FOR_SCORING],
    )


async def score_chunk_relevance(chunk: Chunk, query: str, completer: Completer) -> float:
    """Ask the LLM how relevant a chunk is; returns a 0-1 score.

    Timeouts, provider errors and unparseable replies all yield
    DEFAULT_LLM_SCORE so one bad call never sinks the batch.
    """
    prompt = build_scoring_prompt(chunk, query)
    try:
        result = await with_timeout(
            completer.complete(prompt, SCORING_CONFIG),
            CHUNK_SCORING_TIMEOUT_S,
            "Chunk scoring",
        )
    except Exception as e:
        logger.warning("LLM scoring failed for %s: %s", chunk.name, e)
        return DEFAULT_LLM_SCORE

    score = parse_score_response(result.text)
    if score is None:
        logger.warning("Invalid score format: %r", result.text.strip()[:50])
        return DEFAULT_LLM_SCORE
    return score / 10


async def rerank_with_llm(
    results: list[SearchResult],
    query: str,
    completer: Completer,
    config: RAGConfig,
) -> list[SearchResult]:
    """Rescore vector results with the LLM and keep the best ``rerank_top_k``.

    Candidates are scored concurrently in batches of SCORING_BATCH_SIZE,
    batches one after another.
    """
    if not results:
        return []

    vector_weight, llm_weight = get_query_weights(query)
    scored: list[SearchResult] = []
    total_batches = (len(results) + SCORING_BATCH_SIZE - 1) // SCORING_BATCH_SIZE

    for start in range(0, len(results), SCORING_BATCH_SIZE):
        batch = results[start:start + SCORING_BATCH_SIZE]
        logger.info("Scoring batch %s/%s...", start // SCORING_BATCH_SIZE + 1, total_batches)

        outcomes = await asyncio.gather(
            *(score_chunk_relevance(r.chunk, query, completer) for r in batch),
            return_exceptions=True,
        )
        for result, outcome in zip(batch, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.warning("Batch scoring failed for %s: %s", result.chunk.name, outcome)
                llm_score = DEFAULT_LLM_SCORE
            else:
                llm_score = outcome
            scored.append(SearchResult(
                chunk=result.chunk,
                vector_score=result.vector_score,
                llm_score=llm_score,
                final_score=vector_weight * result.vector_score + llm_weight * llm_score,
            ))

    scored.sort(key=lambda r: r.final_score, reverse=True)
    return scored[:config.rerank_top_k]


def resolve_parent_chunks(results: list[SearchResult], all_chunks: list[Chunk]) -> list[SearchResult]:
    """Prefix split chunks with a pointer to their parent.

    ``parent_id`` is looked up among chunk ids. When it resolves, the result
    gets a copy of its chunk with ``# Parent:`` / ``# From:`` header lines;
    otherwise the result is returned as is.
    """
    by_id = {chunk.id: chunk for chunk in all_chunks}
    resolved = []
    for result in results:
        parent = by_id.get(result.chunk.parent_id) if result.chunk.parent_id is not None else None
        if parent is None:
            resolved.append(result)
            continue
        header = (
            f"# Parent: {parent.name} ({parent.kind.value})\n"
            f"# From: {parent.file_path}:{parent.start_line}\n"
        )
        resolved.append(replace(result, chunk=replace(result.chunk, content=header + result.chunk.content)))
    return resolved


def format_contexts_for_prompt(results: list[SearchResult], max_tokens: int = 8000) -> str:
    """Format results as numbered snippets for the answer prompt.

    Args:
        results: Reranked results
        max_tokens: Approximate budget (~4 chars per token); later snippets
            are dropped once it is spent

    Returns:
        Snippet blocks headed ``[i] kind "name" (file:line)``
    """
    if not results:
        return "No relevant context found."

    max_chars = max_tokens * 4
    total_chars = 0
    blocks = []
    for i, result in enumerate(results, 1):
        chunk = result.chunk
        block = f'[{i}] {chunk.kind.value} "{chunk.name}" ({chunk.location}):\n```\n{chunk.content}\n```'
        if blocks and total_chars + len(block) > max_chars:
            blocks.append(f"... ({len(results) - i + 1} more snippets truncated)")
            break
        blocks.append(block)
        total_chars += len(block)
    return "\n\n".join(blocks)