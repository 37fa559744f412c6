"""Filesystem helpers shared by discovery and persistence."""

from .gitignore import load_ignore_patterns, should_ignore
from .paths import get_allowed_base_path, validate_path_within_base

__all__ = [
    "load_ignore_patterns",
    "should_ignore",
    "get_allowed_base_path",
    "validate_path_within_base",
]
