"""Exception types raised by the indexing and retrieval engine."""


class CodeRagError(Exception):
    """Base class for all engine errors."""


class DimensionMismatchError(CodeRagError, ValueError):
    """An embedding does not have the dimension fixed by the store."""

    def __init__(self, expected: int, actual: int, context: str = "Embedding"):
        self.expected = expected
        self.actual = actual
        super().__init__(f"{context} dimension mismatch: expected {expected}, got {actual}")


class StoreError(CodeRagError):
    """The vector store cannot perform the requested operation."""


class StoreLoadError(StoreError):
    """A persisted index is unreadable or structurally invalid."""


class IndexNotReadyError(CodeRagError):
    """A query was issued before any index was built or loaded."""


class IndexingInProgressError(CodeRagError):
    """An indexing operation is already running on this pipeline."""


class IndexingError(CodeRagError):
    """Indexing produced nothing to store (no files or no chunks)."""


class PathSecurityError(CodeRagError, ValueError):
    """A path resolves outside the allowed base directory."""


class RetryCancelledError(CodeRagError):
    """A retry loop was cancelled through its cancel event."""


class OperationTimeoutError(CodeRagError, TimeoutError):
    """A single provider call exceeded its timeout."""

    def __init__(self, context: str, timeout_s: float):
        self.context = context
        self.timeout_s = timeout_s
        super().__init__(f"{context} timed out after {timeout_s:g}s")
