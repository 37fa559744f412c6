"""Code indexing and retrieval-augmented question answering over a source tree."""

__version__ = "0.1.0"
