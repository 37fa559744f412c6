"""Entity extraction for Python sources.

Turns a source file into named, typed, line-ranged entities (functions,
classes, module-level constants) that the chunker consumes, and discovers
which files of a project tree are worth parsing.
"""

import ast
from pathlib import Path
from typing import Optional

from ..config import config
from ..logging_config import get_logger
from ..tools.gitignore import load_ignore_patterns, should_ignore
from ..tools.paths import get_allowed_base_path, validate_path_within_base
from .types import ChunkKind, Entity

logger = get_logger(__name__)

SOURCE_SUFFIXES = {".py"}

SKIP_DIRECTORIES = {
    "node_modules",
    "dist",
    "build",
    "out",
    "coverage",
    "htmlcov",
    "__pycache__",
    "site-packages",
    "venv",
    "env",
    ".git",
    ".rag_index",
}

_PROTOCOL_BASES = {"Protocol", "ABC", "TypedDict"}


def _should_skip_directory(name: str) -> bool:
    return name in SKIP_DIRECTORIES or name.startswith(".") or name.endswith(".egg-info")


def _is_source_file(path: Path) -> bool:
    if path.suffix not in SOURCE_SUFFIXES:
        return False
    name = path.name
    # Tests and stubs carry no implementation worth retrieving
    if name.startswith("test_") or name.endswith("_test.py") or name == "conftest.py":
        return False
    return True


def discover_files(
    root_path: str | Path,
    max_depth: Optional[int] = None,
    allowed_base: Optional[str | Path] = None,
) -> list[str]:
    """Find all indexable source files below a directory.

    Skips hidden and conventional build/vendor directories, test files, and
    anything matched by .gitignore / .rag-ignore. Directories deeper than
    ``max_depth`` are not traversed (a warning is logged).

    Args:
        root_path: Project root
        max_depth: Maximum directory depth (default from config)
        allowed_base: Base directory the root must live in (default from config)

    Returns:
        Sorted absolute file paths
    """
    base = Path(allowed_base) if allowed_base is not None else get_allowed_base_path()
    root = validate_path_within_base(root_path, base)
    if max_depth is None:
        max_depth = config["rag"]["max_directory_depth"]

    patterns = load_ignore_patterns(root)
    files: list[str] = []

    def traverse(current: Path, depth: int) -> None:
        if depth > max_depth:
            logger.warning("Max directory depth (%s) reached at %s", max_depth, current)
            return
        try:
            entries = sorted(current.iterdir())
        except OSError as e:
            logger.warning("Cannot list %s: %s", current, e)
            return

        for entry in entries:
            if should_ignore(entry, root, patterns):
                continue
            if entry.is_dir():
                if not _should_skip_directory(entry.name):
                    traverse(entry, depth + 1)
            elif entry.is_file() and _is_source_file(entry):
                files.append(str(entry))

    traverse(root, 0)
    return sorted(files)


def _entity_kind(node: ast.AST) -> Optional[ChunkKind]:
    if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
        return ChunkKind.FUNCTION
    if isinstance(node, ast.ClassDef):
        base_names = {
            base.id if isinstance(base, ast.Name) else getattr(base, "attr", "")
            for base in node.bases
        }
        if base_names & _PROTOCOL_BASES:
            return ChunkKind.INTERFACE
        return ChunkKind.CLASS
    if isinstance(node, ast.AnnAssign):
        annotation = node.annotation
        name = annotation.id if isinstance(annotation, ast.Name) else getattr(annotation, "attr", "")
        return ChunkKind.TYPE if name == "TypeAlias" else ChunkKind.CONSTANT
    if isinstance(node, ast.Assign):
        return ChunkKind.CONSTANT
    if type(node).__name__ == "TypeAlias":  # `type X = ...` (Python 3.12+)
        return ChunkKind.TYPE
    return None


def _entity_name(node: ast.AST) -> Optional[str]:
    if isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
        return node.name
    if isinstance(node, ast.AnnAssign) and isinstance(node.target, ast.Name):
        return node.target.id
    if isinstance(node, ast.Assign):
        # One entity per statement, named after its first simple target
        for target in node.targets:
            if isinstance(target, ast.Name):
                return target.id
        return None
    name = getattr(node, "name", None)
    if isinstance(name, ast.Name):
        return name.id
    return None


def parse_entities(file_path: str | Path, allowed_base: Optional[str | Path] = None) -> list[Entity]:
    """Parse a Python file into top-level entities.

    Class bodies are not descended into; methods are part of their class
    entity. A module with code but no named top-level definitions yields one
    ``file`` entity covering the whole module.

    Args:
        file_path: Path to a .py file
        allowed_base: Base directory the file must live in (default from config)

    Returns:
        Entities in source order (empty for an empty file)

    Raises:
        PathSecurityError: If the file is outside the allowed base
        SyntaxError: If the file is not valid Python
        OSError / UnicodeDecodeError: If the file cannot be read
    """
    base = Path(allowed_base) if allowed_base is not None else get_allowed_base_path()
    real_path = validate_path_within_base(file_path, base)
    source = real_path.read_text(encoding="utf-8")
    if not source.strip():
        return []

    tree = ast.parse(source, filename=str(file_path))
    # ast counts only \n as a line break; read_text already folded \r\n and \r
    lines = source.rstrip("\n").split("\n")
    path_str = str(file_path)
    entities: list[Entity] = []

    for node in tree.body:
        kind = _entity_kind(node)
        if kind is None:
            continue
        name = _entity_name(node)
        if name is None:
            continue
        decorators = getattr(node, "decorator_list", [])
        start = min([node.lineno] + [d.lineno for d in decorators])
        end = node.end_lineno or node.lineno
        entities.append(Entity(
            name=name,
            kind=kind,
            code="\n".join(lines[start - 1:end]),
            start_line=start,
            end_line=end,
            file_path=path_str,
        ))

    if not entities:
        entities.append(Entity(
            name=Path(path_str).stem,
            kind=ChunkKind.FILE,
            code=source.rstrip("\n"),
            start_line=1,
            end_line=len(lines),
            file_path=path_str,
        ))

    return entities
