"""Markdown documentation parsing for the ai-docs/ folder.

Documents are split into heading sections and classified (prd, adr, api,
notes) so that design notes can be retrieved alongside the code they describe.
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from ..config import config
from ..logging_config import get_logger
from ..tools.paths import get_allowed_base_path, validate_path_within_base
from .types import DocType

logger = get_logger(__name__)

DOCS_DIRECTORY = "ai-docs"

_FRONTMATTER = re.compile(r"^---\n(.*?)\n---\n?", re.DOTALL)
_HEADING = re.compile(r"^(#{1,6})\s+(.+)$")


@dataclass(frozen=True)
class DocSection:
    """A heading and the text below it, up to the next heading."""

    heading: str
    level: int
    content: str
    start_line: int
    end_line: int


@dataclass(frozen=True)
class ParsedDocument:
    title: str
    doc_type: DocType
    sections: list[DocSection]
    file_path: str
    frontmatter: dict[str, str] = field(default_factory=dict)


def parse_frontmatter(content: str) -> tuple[dict[str, str], str]:
    """Split simple ``key: value`` frontmatter from the document body.

    Returns:
        (frontmatter, body); an empty dict and the original content when the
        document has no frontmatter block
    """
    match = _FRONTMATTER.match(content)
    if not match:
        return {}, content

    frontmatter = {}
    for line in match.group(1).split("\n"):
        key, sep, value = line.partition(":")
        if sep and key.strip():
            frontmatter[key.strip()] = value.strip()
    return frontmatter, content[match.end():]


def extract_sections(content: str) -> list[DocSection]:
    """Split markdown into sections at every heading (# to ######).

    Text before the first heading becomes an "Introduction" section. Sections
    with no body are dropped, except a trailing heading-only section.
    """
    lines = content.split("\n")
    sections: list[DocSection] = []

    heading = ""
    level = 0
    body: list[str] = []
    start_line = 1

    for i, line in enumerate(lines):
        match = _HEADING.match(line)
        if not match:
            body.append(line)
            continue

        text = "\n".join(body).strip()
        if text:
            sections.append(DocSection(
                heading=heading or "Introduction",
                level=level or 1,
                content=text,
                start_line=start_line,
                end_line=i,
            ))

        heading = match.group(2).strip()
        level = len(match.group(1))
        body = []
        start_line = i + 1

    text = "\n".join(body).strip()
    if text or heading:
        sections.append(DocSection(
            heading=heading or "Introduction",
            level=level or 1,
            content=text,
            start_line=start_line,
            end_line=len(lines),
        ))

    return sections


def detect_document_type(file_path: str | Path, frontmatter: Optional[dict[str, str]] = None) -> DocType:
    """Classify a document.

    Priority: frontmatter ``type`` key, then folder name, then filename
    prefix; anything unrecognised is ``notes``.
    """
    declared = (frontmatter or {}).get("type", "").strip().lower()
    if declared in {t.value for t in DocType}:
        return DocType(declared)

    path_lower = Path(file_path).as_posix().lower()
    if "/prd/" in path_lower or "/prds/" in path_lower:
        return DocType.PRD
    if "/adr/" in path_lower or "/adrs/" in path_lower:
        return DocType.ADR
    if "/api/" in path_lower or "/specs/" in path_lower:
        return DocType.API

    name = Path(file_path).name.lower()
    if name.startswith("prd-"):
        return DocType.PRD
    if name.startswith("adr-"):
        return DocType.ADR
    if name.startswith(("api-", "spec-")):
        return DocType.API
    return DocType.NOTES


def parse_markdown_file(file_path: str | Path, allowed_base: Optional[str | Path] = None) -> ParsedDocument:
    """Parse a markdown file into a titled, typed list of sections.

    The title is the first level-1 heading, falling back to the file stem.

    Raises:
        PathSecurityError: If the file is outside the allowed base
        OSError / UnicodeDecodeError: If the file cannot be read
    """
    base = Path(allowed_base) if allowed_base is not None else get_allowed_base_path()
    real_path = validate_path_within_base(file_path, base)
    content = real_path.read_text(encoding="utf-8")

    frontmatter, body = parse_frontmatter(content)
    sections = extract_sections(body)
    title = next((s.heading for s in sections if s.level == 1), Path(file_path).stem)

    return ParsedDocument(
        title=title,
        doc_type=detect_document_type(file_path, frontmatter),
        sections=sections,
        file_path=str(file_path),
        frontmatter=frontmatter,
    )


def discover_document_files(dir_path: str | Path, max_depth: Optional[int] = None) -> list[str]:
    """Find markdown files below a directory.

    Hidden entries and files starting with ``_`` are skipped. A missing
    directory yields an empty list.
    """
    if max_depth is None:
        max_depth = config["rag"]["max_directory_depth"]
    files: list[str] = []

    def traverse(current: Path, depth: int) -> None:
        if depth > max_depth:
            return
        try:
            entries = sorted(current.iterdir())
        except OSError:
            return
        for entry in entries:
            if entry.name.startswith("."):
                continue
            if entry.is_dir():
                traverse(entry, depth + 1)
            elif entry.suffix == ".md" and not entry.name.startswith("_"):
                files.append(str(entry))

    traverse(Path(dir_path), 0)
    logger.debug("Found %s document files in %s", len(files), dir_path)
    return files
