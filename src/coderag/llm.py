"""Provider capabilities used by the engine, and their default adapters.

The engine only talks to three narrow interfaces: ``Embedder``,
``BatchEmbedder`` and ``Completer``. ``LangChainCompleter`` adapts any
langchain chat model (ChatOpenAI against an OpenAI-compatible endpoint by
default); ``SentenceTransformerEmbedder`` runs a local sentence-transformers
model.
"""

import asyncio
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage
from langchain_openai import ChatOpenAI

from .config import config
from .logging_config import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class CompletionConfig:
    temperature: float = 0.3
    max_tokens: int = 2048


@dataclass(frozen=True)
class CompletionResult:
    text: str
    token_count: int = 0
    finish_reason: Optional[str] = None
    model: Optional[str] = None


@runtime_checkable
class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]: ...


@runtime_checkable
class BatchEmbedder(Embedder, Protocol):
    async def embed_batch(self, texts: list[str]) -> list[list[float]]: ...


@runtime_checkable
class Completer(Protocol):
    async def complete(self, prompt: str, config: CompletionConfig) -> CompletionResult: ...


def get_llm(
    model: Optional[str] = None,
    base_url: Optional[str] = None,
) -> ChatOpenAI:
    """Get a configured ChatOpenAI instance.

    With a ``base_url`` the client points at any OpenAI-compatible server
    (text-generation-webui, vLLM, ...) and no API key is required.
    """
    llm_kwargs: dict[str, Any] = {
        "model": model or config["llm"]["model"],
        "max_tokens": config["llm"]["max_tokens"],
        "temperature": config["llm"]["temperature"],
    }
    base_url = base_url or config["llm"]["base_url"]
    if base_url:
        llm_kwargs["base_url"] = base_url
        llm_kwargs["api_key"] = "not-needed"
    return ChatOpenAI(**llm_kwargs)


def _token_count(message: Any) -> int:
    usage = getattr(message, "usage_metadata", None) or {}
    if usage.get("total_tokens"):
        return int(usage["total_tokens"])
    token_usage = (getattr(message, "response_metadata", None) or {}).get("token_usage") or {}
    return int(token_usage.get("total_tokens") or 0)


class LangChainCompleter:
    """``Completer`` backed by a langchain chat model."""

    def __init__(self, llm: Optional[BaseChatModel] = None):
        self.llm = llm if llm is not None else get_llm()

    async def complete(self, prompt: str, config: CompletionConfig) -> CompletionResult:
        bound = self.llm.bind(temperature=config.temperature, max_tokens=config.max_tokens)
        message = await bound.ainvoke([HumanMessage(content=prompt)])

        metadata = getattr(message, "response_metadata", None) or {}
        content = message.content if isinstance(message.content, str) else str(message.content)
        return CompletionResult(
            text=content,
            token_count=_token_count(message),
            finish_reason=metadata.get("finish_reason"),
            model=metadata.get("model_name"),
        )


class SentenceTransformerEmbedder:
    """``BatchEmbedder`` running a sentence-transformers model locally.

    The model is loaded on first use; encoding runs in a worker thread so the
    event loop stays responsive.
    """

    def __init__(self, model_name: Optional[str] = None):
        self.model_name = model_name or config["embedding"]["model"]
        self._model = None

    def _get_model(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            logger.info("Loading embedding model %s (first time only)...", self.model_name)
            self._model = SentenceTransformer(self.model_name)
        return self._model

    def _encode(self, texts: list[str]) -> list[list[float]]:
        embeddings = self._get_model().encode(texts, show_progress_bar=len(texts) > 50)
        return embeddings.tolist()

    async def embed(self, text: str) -> list[float]:
        result = await asyncio.to_thread(self._encode, [text])
        return result[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        return await asyncio.to_thread(self._encode, texts)
