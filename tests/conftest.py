"""
Pytest configuration and fixtures for Villy tests.

Provides shared fixtures for:
- A fake clock for TTL expiry
- Isolated pipeline contexts (settings, caches, monitor)
- Retrieval candidates and stub collaborators (retriever, chat model, cross-encoder)
"""

import json
from types import SimpleNamespace
from typing import Any, Dict, List

import pytest
from unittest.mock import AsyncMock, MagicMock

from libs.common.settings import get_settings


class FakeClock:
    """Manually advanced clock; reports seconds, advances in whole milliseconds."""

    def __init__(self, start_ms: int = 1_000_000):
        self.now_ms = start_ms

    def __call__(self) -> float:
        return self.now_ms / 1000.0

    def advance_ms(self, ms: int) -> None:
        self.now_ms += ms


@pytest.fixture(autouse=True)
def setup_test_env(monkeypatch):
    """Set up test environment variables."""
    monkeypatch.setenv("CHAT_APP_ENV", "test")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def settings():
    from libs.common.settings import Settings

    return Settings(performance_logging=True)


@pytest.fixture
def pipeline_context(settings):
    """Fresh caches and an enabled monitor per test."""
    from api.orchestrators.query_orchestrator import PipelineContext

    return PipelineContext.from_settings(settings)


def make_rows(count: int = 5, start_sim: float = 0.6, step: float = 0.05) -> List[Dict[str, Any]]:
    """Store rows with descending vector similarity and matching final scores."""
    rows = []
    for i in range(count):
        sim = round(start_sim - i * step, 4)
        rows.append(
            {
                "entry_id": f"entry-{i}",
                "title": f"Rule 114 Section {i + 1}",
                "type": "rule_of_court",
                "canonical_citation": f"Rule 114, Sec. {i + 1}",
                "summary": f"Bail provision number {i + 1}",
                "text": f"Full text of bail provision {i + 1}. " * 5,
                "vectorSim": sim,
                "lexsim": 0.3,
                "finalScore": sim,
            }
        )
    return rows


@pytest.fixture
def candidate_rows():
    return make_rows()


def chat_response(payload: Any, total_tokens: int = 42) -> SimpleNamespace:
    """Object shaped like a LangChain AIMessage."""
    content = payload if isinstance(payload, str) else json.dumps(payload)
    return SimpleNamespace(content=content, response_metadata={"token_usage": {"total_tokens": total_tokens}})


@pytest.fixture
def mock_chat_model():
    """Chat model stub with an AsyncMock ainvoke."""
    llm = MagicMock()
    llm.ainvoke = AsyncMock()
    return llm


@pytest.fixture
def mock_retriever(candidate_rows):
    retriever = MagicMock()
    retriever.search = AsyncMock(return_value=candidate_rows)
    return retriever


@pytest.fixture
def rows_factory():
    return make_rows


@pytest.fixture
def chat_response_factory():
    return chat_response
