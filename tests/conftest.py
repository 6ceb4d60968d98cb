"""
Test Configuration - Shared fixtures for codeindex tests.

Uses pytest fixtures to create isolated workspaces and a deterministic
embedding provider, so no test touches the network or downloads a model.
"""

import shutil
import tempfile
from pathlib import Path
from typing import Generator

import pytest
import pytest_asyncio

from codeindex.config import (
    ChunkerConfig, CoordinatorConfig, EmbeddingConfig, EngineConfig,
    EngineContext, WatchConfig,
)
from codeindex.coordinator import IndexCoordinator
from fakes import FakeEmbedder


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    tmp = tempfile.mkdtemp(prefix="codeindex_test_")
    # Resolve to handle macOS /var -> /private/var symlink
    resolved = Path(tmp).resolve()
    yield resolved
    shutil.rmtree(str(resolved), ignore_errors=True)


@pytest.fixture
def workspace(temp_dir: Path) -> Path:
    root = temp_dir / "workspace"
    root.mkdir()
    return root


@pytest.fixture
def test_config() -> EngineConfig:
    """Small, fast settings: short debounce, no backoff, immediate degradation."""
    return EngineConfig(
        watch=WatchConfig(debounce_ms=20, max_batch_wait_ms=200, poll_interval_s=0.05),
        chunker=ChunkerConfig(max_chunk_bytes=4000, max_chunk_lines=12),
        embedding=EmbeddingConfig(model="fake-bow", batch_size=4, backoff_base_s=0.0, backoff_max_s=0.0),
        coordinator=CoordinatorConfig(provider_failure_budget=1, degraded_after_s=0.0),
    )


@pytest.fixture
def context(workspace: Path, temp_dir: Path, test_config: EngineConfig) -> EngineContext:
    return EngineContext(workspace_root=workspace, cache_dir=temp_dir / "cache", config=test_config)


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


def function_block(name: str, body: str) -> str:
    return f"def {name}():\n    {body}\n    return None\n"


@pytest.fixture
def sample_workspace(workspace: Path) -> Path:
    """
    A small project:
    - a.py: a literal "parse json" helper plus unrelated functions
    - b.py: a JSON decoder that never says "parse json"
    - pkg/util.py: nested module
    - .hidden, node_modules/, logo.png: ignored
    """
    a_functions = [
        function_block("parse_json_payload", '"""parse json from the request body"""'),
        function_block("format_banner", 'print("welcome")'),
        function_block("count_items", "total = len(items)"),
        function_block("close_socket", "sock.close()"),
    ]
    (workspace / "a.py").write_text("\n".join(a_functions))

    (workspace / "b.py").write_text(
        "def load_document(raw):\n"
        "    return decoder.decode(raw)\n"
        "\n"
        "def decoder_for_json():\n"
        "    return json.JSONDecoder()\n"
    )

    (workspace / "pkg").mkdir()
    (workspace / "pkg" / "util.py").write_text("def helper():\n    return 42\n")

    (workspace / ".hidden").write_text("parse json secret")
    (workspace / "node_modules").mkdir()
    (workspace / "node_modules" / "dep.js").write_text("function parseJson() {}\n")
    (workspace / "logo.png").write_bytes(b"\x89PNG\r\n\x1a\n\x00\x00")
    return workspace


@pytest.fixture
def long_module(workspace: Path) -> Path:
    """A 40-line module of blank-line separated functions, several chunks long."""
    blocks = [function_block(f"step_{i}", f"value = compute_{i}(input)") for i in range(10)]
    path = workspace / "long.py"
    path.write_text("\n".join(blocks))
    return path


@pytest_asyncio.fixture
async def coordinator(context: EngineContext, fake_embedder: FakeEmbedder):
    """An opened coordinator over the fixture workspace; the caller builds."""
    coordinator = IndexCoordinator(context, fake_embedder)
    await coordinator.open()
    yield coordinator
    await coordinator.close()
