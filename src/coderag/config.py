import json
import os

from .logging_config import get_logger

logger = get_logger(__name__)
config: dict = None


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.debug("Ignoring non-integer %s=%r (using %s)", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.debug("Ignoring non-numeric %s=%r (using %s)", name, raw, default)
        return default


def _initialise_config() -> dict:
    """Get application configuration.

    Loads configuration from a JSON file and then applies env var overrides.
    """

    config = {
        "log_level": "INFO",
        "log_file": None,
        "store_path": ".rag_index",
        "allowed_base": None,
        "llm": {
            "model": "gpt-4o-mini",
            "base_url": None,
            "temperature": 0.3,
            "max_tokens": 2048,
        },
        "embedding": {
            "model": "sentence-transformers/all-MiniLM-L6-v2",
            "batch_size": 20,
            "timeout_s": 30.0,
        },
        "rag": {
            "chunk_size": 300,
            "chunk_overlap": 50,
            "top_k": 15,
            "rerank_top_k": 5,
            "vector_weight": 0.3,
            "llm_weight": 0.7,
            "max_directory_depth": 20,
        },
        "retry": {
            "max_retries": 3,
            "base_delay_ms": 1000,
            "max_delay_ms": 30000,
        },
    }

    # Attempt to load config.json; a missing file is normal
    try:
        with open("config.json", "r", encoding="utf-8") as f:
            loaded = json.load(f)
        for key, value in loaded.items():
            if isinstance(value, dict) and isinstance(config.get(key), dict):
                config[key].update(value)
            else:
                config[key] = value
    except Exception as e:
        logger.debug("Could not load config.json: %s (using defaults)", e)

    if os.getenv("CODERAG_LOG_LEVEL"):
        config["log_level"] = os.getenv("CODERAG_LOG_LEVEL").upper()
    if os.getenv("CODERAG_LOG_FILE") is not None:
        config["log_file"] = os.getenv("CODERAG_LOG_FILE")

    if os.getenv("CODERAG_LLM_BASE_URL"):
        config["llm"]["base_url"] = os.getenv("CODERAG_LLM_BASE_URL")
    if os.getenv("CODERAG_LLM_MODEL"):
        config["llm"]["model"] = os.getenv("CODERAG_LLM_MODEL")
    if os.getenv("CODERAG_EMBEDDING_MODEL"):
        config["embedding"]["model"] = os.getenv("CODERAG_EMBEDDING_MODEL")
    if os.getenv("CODERAG_STORE_PATH"):
        config["store_path"] = os.getenv("CODERAG_STORE_PATH")

    allowed_base = os.getenv("CODERAG_ALLOWED_BASE") or os.getenv("PROJECT_PATH")
    if allowed_base:
        config["allowed_base"] = allowed_base

    rag = config["rag"]
    rag["chunk_size"] = _env_int("RAG_CHUNK_SIZE", rag["chunk_size"])
    rag["chunk_overlap"] = _env_int("RAG_CHUNK_OVERLAP", rag["chunk_overlap"])
    rag["top_k"] = _env_int("RAG_TOP_K", rag["top_k"])
    rag["rerank_top_k"] = _env_int("RAG_RERANK_TOP_K", rag["rerank_top_k"])
    rag["vector_weight"] = _env_float("RAG_VECTOR_WEIGHT", rag["vector_weight"])
    rag["llm_weight"] = _env_float("RAG_LLM_WEIGHT", rag["llm_weight"])
    rag["max_directory_depth"] = _env_int("RAG_MAX_DIRECTORY_DEPTH", rag["max_directory_depth"])
    config["embedding"]["batch_size"] = _env_int(
        "RAG_EMBEDDING_BATCH_SIZE", config["embedding"]["batch_size"]
    )

    return config


def get_rag_config(**overrides):
    """Build a validated RAGConfig from configuration plus keyword overrides.

    Raises:
        pydantic.ValidationError: If the combined values are inconsistent.
    """
    from .rag.types import RAGConfig

    rag = config["rag"]
    values = {
        "chunk_size": rag["chunk_size"],
        "chunk_overlap": rag["chunk_overlap"],
        "top_k": rag["top_k"],
        "rerank_top_k": rag["rerank_top_k"],
        "vector_weight": rag["vector_weight"],
        "llm_weight": rag["llm_weight"],
    }
    values.update(overrides)
    return RAGConfig(**values)


config = _initialise_config()
