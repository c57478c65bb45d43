# tests/conftest.py
"""
Pytest configuration and shared fixtures for Recollect tests.
"""

import math
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from recollect.config import Settings
from recollect.database import DatabaseManager
from recollect.llm import LLMBackend, LLMError
from recollect.store import MemoryStore

def pytest_configure(config):
    """Configure custom pytest markers."""
    config.addinivalue_line(
        "markers", "asyncio: mark test as an asyncio test."
    )


# ============================================================================
# Vector helpers
# ============================================================================

def vec(*components: float, dim: int = 4) -> List[float]:
    """Vector padded with zeros to dim."""
    values = list(components) + [0.0] * (dim - len(components))
    return values[:dim]


def at_similarity(similarity: float, dim: int = 4) -> List[float]:
    """Unit vector whose cosine with vec(1.0) is exactly `similarity`."""
    return vec(similarity, math.sqrt(max(0.0, 1.0 - similarity ** 2)), dim=dim)


OLD = datetime.now(timezone.utc) - timedelta(days=30)


# ============================================================================
# Test doubles
# ============================================================================

class FakeEmbedder:
    """Returns canned vectors; unknown texts get the default vector."""

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, default=None, fail: bool = False):
        self.vectors = vectors or {}
        self.default = default or vec(0.0, 0.0, 1.0)
        self.fail = fail
        self.calls: List[str] = []

    def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        if self.fail:
            raise RuntimeError("embedding model unavailable")
        return self.vectors.get(text, self.default)


class FakeLLM(LLMBackend):
    """Replays responses in order (the last one repeats); records prompts."""

    name = "fake"

    def __init__(self, responses=None, error: Optional[Exception] = None):
        if isinstance(responses, str):
            responses = [responses]
        self.responses = list(responses or ["merged"])
        self.error = error
        self.prompts: List[str] = []
        self.system_prompts: List[Optional[str]] = []

    async def complete(self, prompt, *, max_tokens=500, timeout=30.0, system_prompt=None, temperature=0.1):
        self.prompts.append(prompt)
        self.system_prompts.append(system_prompt)
        if self.error is not None:
            raise self.error
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


class BrokenLLM(FakeLLM):
    def __init__(self):
        super().__init__(error=LLMError("connection refused"))


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def temp_storage():
    """Create a temporary storage directory."""
    temp_dir = tempfile.mkdtemp()
    yield temp_dir
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def test_settings(temp_storage):
    """Settings with guards off and no real LLM."""
    return Settings(
        storage_path=temp_storage,
        llm_backend="none",
        min_corpus_size=0,
        min_memory_age_days=0,
        lock_max_wait_seconds=1.0,
        lock_retry_seconds=0.01,
    )


@pytest_asyncio.fixture
async def db(temp_storage):
    manager = DatabaseManager(temp_storage)
    await manager.init_db()
    yield manager
    await manager.close()


@pytest_asyncio.fixture
async def store(db):
    return MemoryStore(db)


@pytest.fixture
def make_memory(store):
    """Factory: create an old (guard-eligible) memory."""
    async def _make(content: str, embedding=None, **kwargs):
        kwargs.setdefault("created_at", OLD)
        return await store.create_memory(content, embedding=embedding, **kwargs)
    return _make
