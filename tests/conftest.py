"""Pytest configuration and fixtures for engine testing."""

import uuid

import pytest

from coderag.rag.types import Chunk, ChunkKind
from coderag.testing.mock_llm import FakeEmbedder, create_mock_completer


@pytest.fixture(autouse=True)
def allowed_base(tmp_path, monkeypatch):
    """Confine filesystem access to the test's temp dir."""
    monkeypatch.setenv("CODERAG_ALLOWED_BASE", str(tmp_path))
    monkeypatch.delenv("PROJECT_PATH", raising=False)
    return tmp_path


@pytest.fixture
def fake_embedder():
    return FakeEmbedder(dimension=16)


@pytest.fixture
def mock_completer_factory():
    """Factory for completers with scripted responses.

    Example:
        >>> def test_rerank(mock_completer_factory):
        ...     completer = mock_completer_factory(["8"])
    """
    def _factory(responses):
        return create_mock_completer(responses)
    return _factory


@pytest.fixture
def make_chunk():
    """Factory for chunks with sensible defaults."""
    def _factory(name="handler", content=None, file_path="/src/app.py", **kwargs):
        content = content if content is not None else f"def {name}():\n    pass"
        values = {
            "id": uuid.uuid4().hex,
            "content": content,
            "kind": ChunkKind.FUNCTION,
            "name": name,
            "file_path": file_path,
            "start_line": 1,
            "end_line": content.count("\n") + 1,
            "token_count": len(content) // 4 + 1,
        }
        values.update(kwargs)
        return Chunk(**values)
    return _factory


@pytest.fixture
def sample_project(tmp_path):
    """A two-file Python project.

    Produces five code chunks: three entities in models.py, two in utils.py.
    """
    project = tmp_path / "project"
    pkg = project / "app"
    pkg.mkdir(parents=True)
    (pkg / "models.py").write_text(
        'MAX_USERS = 100\n'
        '\n'
        '\n'
        'class User:\n'
        '    """A registered user."""\n'
        '\n'
        '    def __init__(self, name):\n'
        '        self.name = name\n'
        '\n'
        '\n'
        'def create_user(name):\n'
        '    return User(name)\n',
        encoding="utf-8",
    )
    (pkg / "utils.py").write_text(
        'def slugify(text):\n'
        '    return text.lower().replace(" ", "-")\n'
        '\n'
        '\n'
        'async def fetch_profile(client, user_id):\n'
        '    return await client.get(f"/users/{user_id}")\n',
        encoding="utf-8",
    )
    return project
