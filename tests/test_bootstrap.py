"""Tests for engine assembly."""

import dataclasses

from convotag.analysis.rule_analyzer import RuleAnalyzer
from convotag.bootstrap import Engine, bootstrap_database, build_engine
from convotag.cache import InMemoryCache, NullCache
from convotag.config import settings
from convotag.db.connection import Database


class TestBootstrapDatabase:
    def test_idempotent(self, test_settings):
        database = Database(test_settings.database_url)
        try:
            assert bootstrap_database(database) == 18
            assert bootstrap_database(database) == 0
        finally:
            database.dispose()


class TestBuildEngine:
    def test_defaults_from_settings(self, database, test_settings):
        engine = build_engine(database=database, config=test_settings)
        try:
            assert isinstance(engine.analyzer, RuleAnalyzer)
            assert isinstance(engine.cache, InMemoryCache)
            assert engine.config is test_settings
            assert engine.worker.num_threads == test_settings.analysis_max_workers
            assert engine.worker.poll_interval == test_settings.analysis_poll_interval
            assert engine.dispatcher.enabled is True
        finally:
            engine.stop(timeout=1.0)

    def test_process_settings_by_default(self, database, fake_analyzer):
        engine = build_engine(database=database, analyzer=fake_analyzer, cache=NullCache())
        try:
            assert engine.config is settings
            assert engine.worker.num_threads == settings.analysis_max_workers
        finally:
            engine.stop(timeout=1.0)

    def test_engine_config_has_no_shared_default(self):
        config_field = next(f for f in dataclasses.fields(Engine) if f.name == "config")

        assert config_field.default is dataclasses.MISSING
        assert config_field.default_factory is dataclasses.MISSING

    def test_cache_disabled(self, database, test_settings):
        test_settings.cache_enabled = False

        engine = build_engine(database=database, config=test_settings)
        try:
            assert isinstance(engine.cache, NullCache)
        finally:
            engine.stop(timeout=1.0)

    def test_services_share_dependencies(self, engine):
        assert engine.conversations.dispatcher is engine.dispatcher
        assert engine.analysis.recommendation_service is engine.recommendations
        assert engine.conversations.cache is engine.cache
        assert engine.tags.cache is engine.cache

    def test_dispatch_wakes_worker(self, engine, conversation, add_messages):
        add_messages(conversation.id, 3)

        assert engine.worker._wake_event.is_set()

    def test_rule_analyzer_end_to_end(self, database, test_settings, owner_id):
        engine = build_engine(database=database, config=test_settings)
        try:
            conversation = engine.conversations.create_conversation(owner_id, title="Memory")
            for text in (
                "I keep forgetting what I review",
                "Try spaced repetition.",
                "How do I memorize formulas?",
            ):
                engine.conversations.append_message(conversation.id, "user", text)

            assert engine.worker.drain() == 1
            result = engine.analysis.get_result(conversation.id, owner_id)
            assert result.model_used == "rule_based_v1"
            assert "memory_retention" in result.problem_types
        finally:
            engine.stop(timeout=1.0)
