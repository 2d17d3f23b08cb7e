"""
Engine assembly for Convotag.

Wires the database, cache, analyzer, services and background worker from
settings so embedding applications get a ready engine with one call.
Schema setup is idempotent: safe to run on every start.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from alembic import command
from alembic.config import Config as AlembicConfig

from convotag.analysis import create_analyzer
from convotag.analysis.base import Analyzer
from convotag.analysis.job_queue import AnalysisDispatcher
from convotag.analysis.worker import AnalysisWorker
from convotag.cache import ConversationCache, create_cache
from convotag.config import Settings
from convotag.config import settings as default_settings
from convotag.db.connection import Database
from convotag.db.retry import RetryConfig
from convotag.services import (
    AnalysisService,
    ConversationService,
    RecommendationService,
    TagService,
)
from convotag.tagging.taxonomy import seed_system_tags

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "db" / "migrations"


def alembic_config(database_url: str) -> AlembicConfig:
    """Alembic configuration pointing at the packaged migrations."""
    config = AlembicConfig()
    config.set_main_option("script_location", str(MIGRATIONS_DIR))
    config.set_main_option("sqlalchemy.url", database_url)
    return config


def upgrade_database(database_url: str, revision: str = "head") -> None:
    """Apply Alembic migrations up to ``revision``."""
    logger.info(f"Upgrading database schema to {revision}")
    command.upgrade(alembic_config(database_url), revision)


def bootstrap_database(database: Database) -> int:
    """
    Create missing tables and seed the system taxonomy.

    Returns:
        Number of system tags created
    """
    database.init_db()
    with database.session_scope() as session:
        return seed_system_tags(session)


@dataclass
class Engine:
    """A wired Convotag engine."""

    database: Database
    cache: ConversationCache
    analyzer: Analyzer
    dispatcher: AnalysisDispatcher
    conversations: ConversationService
    analysis: AnalysisService
    recommendations: RecommendationService
    tags: TagService
    worker: AnalysisWorker
    config: Settings

    def start(self) -> None:
        """Start the background analysis worker."""
        self.worker.start()

    def stop(self, timeout: float = 10.0) -> None:
        self.worker.stop(timeout=timeout)
        self.analysis.shutdown(timeout=timeout)

    def health(self) -> dict[str, object]:
        return {
            "database": self.database.check_connection(),
            "worker": self.worker.get_worker_stats(),
            "cache": self.cache.get_stats().to_dict(),
        }


def build_engine(
    database: Optional[Database] = None,
    config: Optional[Settings] = None,
    analyzer: Optional[Analyzer] = None,
    cache: Optional[ConversationCache] = None,
) -> Engine:
    """
    Assemble an engine from settings.

    Args:
        database: Database to use (default: one built from ``database_url``)
        config: Settings (default: the process-wide settings)
        analyzer: Analyzer override (default: from ``analysis_provider``)
        cache: Cache override (default: from ``cache_enabled``)

    Returns:
        Engine with its worker not yet started
    """
    config = config or default_settings
    database = database or Database(config.database_url)
    cache = cache or create_cache(config)
    analyzer = analyzer or create_analyzer(config)
    retry_config = RetryConfig(
        max_retries=config.db_retry_attempts,
        initial_delay=config.db_retry_initial_delay,
    )

    dispatcher = AnalysisDispatcher(database, enabled=config.analysis_enabled)
    recommendations = RecommendationService(
        database, cache=cache, config=config, retry_config=retry_config
    )
    analysis = AnalysisService(
        database,
        analyzer,
        cache=cache,
        recommendation_service=recommendations,
        config=config,
        retry_config=retry_config,
    )
    worker = AnalysisWorker(
        database,
        analysis,
        num_threads=config.analysis_max_workers,
        poll_interval=config.analysis_poll_interval,
        stale_job_timeout_minutes=config.analysis_stale_job_minutes,
        purge_completed_days=config.analysis_purge_days,
    )
    dispatcher.add_listener(worker.wake)

    logger.info(
        f"Built engine on {database.dialect_name} "
        f"(analyzer={type(analyzer).__name__}, cache={type(cache).__name__})"
    )
    return Engine(
        database=database,
        cache=cache,
        analyzer=analyzer,
        dispatcher=dispatcher,
        conversations=ConversationService(
            database, cache=cache, dispatcher=dispatcher, retry_config=retry_config
        ),
        analysis=analysis,
        recommendations=recommendations,
        tags=TagService(database, cache=cache, retry_config=retry_config),
        worker=worker,
        config=config,
    )
