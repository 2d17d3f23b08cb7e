"""
Pytest configuration and fixtures for Convotag tests.

Every test gets its own file-backed SQLite database (file-backed so that
threads in concurrency tests see each other's commits), plus services wired
the way ``build_engine`` wires them. The ``cache`` fixture is parametrized,
so every test that uses the services runs once with the in-memory cache and
once with caching disabled.
"""

import copy
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Generator, Optional

import pytest

from convotag.bootstrap import Engine, bootstrap_database, build_engine
from convotag.cache import ConversationCache, InMemoryCache, NullCache
from convotag.config import Settings
from convotag.db.connection import Database
from convotag.models.analysis import Transcript


def make_payload(**overrides: Any) -> dict[str, Any]:
    """A valid raw analysis payload recommending learning_strategy at 0.82."""
    payload: dict[str, Any] = {
        "summary": "Discussion of learning strategy",
        "key_insights": ["The user wants a study plan"],
        "main_topics": ["education"],
        "problem_types": ["learning_strategy"],
        "suggested_actions": ["Draft a personalized study plan and schedule"],
        "sentiment_score": 0.4,
        "complexity_score": 2,
        "engagement_score": 0.7,
        "auto_tags": ["learning_strategy"],
        "confidence_scores": {"learning_strategy": 0.82},
        "model_used": "fake_analyzer",
        "processing_time_ms": 5,
    }
    payload.update(overrides)
    return payload


class FakeAnalyzer:
    """Analyzer returning scripted payloads and recording its calls."""

    def __init__(self, payload: Optional[dict[str, Any]] = None):
        self.default = payload or make_payload()
        self.scripted: list[Any] = []
        self.calls: list[Transcript] = []
        self.error: Optional[Exception] = None
        self.delay = 0.0
        self._lock = threading.Lock()

    def queue(self, *payloads: Any) -> None:
        """Return these payloads (in order) before falling back to the default."""
        self.scripted.extend(payloads)

    def analyze(self, transcript: Transcript) -> dict[str, Any]:
        with self._lock:
            self.calls.append(transcript)
            scripted = self.scripted.pop(0) if self.scripted else None
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if scripted is not None:
            return copy.deepcopy(scripted)
        return copy.deepcopy(self.default)


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Settings isolated from the environment and any .env file."""
    return Settings(
        _env_file=None,
        sqlite_path=str(tmp_path / "convotag.db"),
        analysis_enabled=True,
        analysis_provider="rule",
        analysis_timeout_seconds=5.0,
        analysis_max_workers=2,
        analysis_poll_interval=0.05,
        recommendation_min_confidence=0.3,
        cache_enabled=True,
        cache_ttl_seconds=0,
        db_retry_attempts=5,
        db_retry_initial_delay=0.01,
        log_file_enabled=False,
    )


@pytest.fixture
def database(test_settings: Settings) -> Generator[Database, None, None]:
    """A fresh SQLite database with tables created and system tags seeded."""
    db = Database(test_settings.database_url)
    bootstrap_database(db)
    yield db
    db.dispose()


@pytest.fixture(params=["memory", "none"])
def cache(request) -> ConversationCache:
    """Run the test once with the in-memory cache and once without caching."""
    if request.param == "memory":
        return InMemoryCache(ttl_seconds=0, max_entries=1000)
    return NullCache()


@pytest.fixture
def fake_analyzer() -> FakeAnalyzer:
    return FakeAnalyzer()


@pytest.fixture
def engine(
    database: Database,
    test_settings: Settings,
    fake_analyzer: FakeAnalyzer,
    cache: ConversationCache,
) -> Generator[Engine, None, None]:
    """Fully wired engine; the worker is not started (tests drain it)."""
    built = build_engine(
        database=database, config=test_settings, analyzer=fake_analyzer, cache=cache
    )
    yield built
    built.stop(timeout=2.0)


@pytest.fixture
def conversation_service(engine: Engine):
    return engine.conversations


@pytest.fixture
def analysis_service(engine: Engine):
    return engine.analysis


@pytest.fixture
def recommendation_service(engine: Engine):
    return engine.recommendations


@pytest.fixture
def tag_service(engine: Engine):
    return engine.tags


@pytest.fixture
def owner_id() -> str:
    return "user-123"


@pytest.fixture
def conversation(conversation_service, owner_id: str):
    """An empty conversation owned by ``owner_id``."""
    return conversation_service.create_conversation(
        owner_id=owner_id, title="Study planning", category="Socrates"
    )


@pytest.fixture
def add_messages(conversation_service, owner_id: str) -> Callable[[uuid.UUID, int], list]:
    """Append ``count`` alternating user/assistant messages to a conversation."""

    def _add(conversation_id: uuid.UUID, count: int) -> list:
        messages = []
        for i in range(count):
            role = "user" if i % 2 == 0 else "assistant"
            messages.append(
                conversation_service.append_message(
                    conversation_id,
                    role=role,
                    content=f"{role} message {i}: how should I plan my study?",
                    tokens=10,
                    owner_id=owner_id,
                )
            )
        return messages

    return _add


@pytest.fixture
def analyzed_conversation(engine: Engine, conversation, add_messages):
    """A conversation with three messages whose first analysis has run."""
    add_messages(conversation.id, 3)
    processed = engine.worker.drain()
    assert processed == 1
    return conversation


@pytest.fixture
def payload_factory() -> Callable[..., dict[str, Any]]:
    """Build raw analysis payloads; keyword arguments override fields."""
    return make_payload
