"""
Analysis service.

Builds transcripts, calls the configured analyzer under a timeout, and
stores the validated result. Storing a result also denormalizes it onto the
conversation and regenerates recommendations in the same transaction.
"""

import logging
import threading
import time
import uuid
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FuturesTimeoutError
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Union

from convotag.analysis.base import Analyzer
from convotag.cache import ConversationCache, NullCache, analysis_key
from convotag.config import Settings
from convotag.config import settings as default_settings
from convotag.db.connection import Database
from convotag.db.repositories.analysis import AnalysisResultRepository
from convotag.db.repositories.conversation import ConversationRepository
from convotag.db.repositories.message import MessageRepository
from convotag.db.retry import RetryConfig, run_with_retry
from convotag.exceptions import (
    AnalysisUnavailableError,
    ConvotagError,
    ForbiddenError,
    NotFoundError,
)
from convotag.models.analysis import AnalysisPayload, Transcript, TranscriptMessage
from convotag.schemas import (
    AnalysisResultResponse,
    BatchAnalysisItem,
    BatchAnalysisResponse,
)
from convotag.services.conversation_service import load_owned_conversation
from convotag.services.recommendation_service import RecommendationService

logger = logging.getLogger(__name__)


class AnalysisService:
    """Runs analyzers and owns the current AnalysisResult of each conversation."""

    def __init__(
        self,
        database: Database,
        analyzer: Analyzer,
        cache: Optional[ConversationCache] = None,
        recommendation_service: Optional[RecommendationService] = None,
        config: Optional[Settings] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        self.database = database
        self.analyzer = analyzer
        self.cache = cache or NullCache()
        self.config = config or default_settings
        self.retry_config = retry_config
        self.recommendation_service = recommendation_service or RecommendationService(
            database, cache=self.cache, config=self.config, retry_config=retry_config
        )
        self._calls: set[threading.Thread] = set()
        self._calls_lock = threading.Lock()

    def build_transcript(self, conversation_id: uuid.UUID) -> Transcript:
        """
        Read a conversation into the transcript handed to analyzers.

        Raises:
            NotFoundError: Conversation missing or deleted
        """

        def _build() -> Transcript:
            with self.database.session_scope(snapshot=True) as session:
                conversation = ConversationRepository(session).get_active(conversation_id)
                if conversation is None:
                    raise NotFoundError("Conversation", conversation_id)
                messages = MessageRepository(session).get_by_conversation(conversation_id)
                return Transcript(
                    conversation_id=str(conversation.id),
                    title=conversation.title,
                    category=conversation.category,
                    messages=[
                        TranscriptMessage(
                            role=m.role, content=m.content, message_order=m.message_order
                        )
                        for m in messages
                    ],
                )

        return run_with_retry(_build, self.retry_config, "build_transcript")

    def _call_analyzer(self, transcript: Transcript) -> dict[str, Any]:
        # One daemon thread per call; a timed-out call is abandoned, not cancelled
        timeout = self.config.analysis_timeout_seconds
        future: Future = Future()

        def _run() -> None:
            try:
                future.set_result(self.analyzer.analyze(transcript))
            except Exception as e:
                future.set_exception(e)
            finally:
                with self._calls_lock:
                    self._calls.discard(threading.current_thread())

        thread = threading.Thread(
            target=_run,
            name=f"convotag-analyzer-{transcript.conversation_id}",
            daemon=True,
        )
        with self._calls_lock:
            self._calls.add(thread)
        thread.start()

        try:
            return future.result(timeout=timeout)
        except FuturesTimeoutError as e:
            logger.warning(
                f"Analyzer timed out after {timeout}s for conversation "
                f"{transcript.conversation_id}; abandoning call"
            )
            raise AnalysisUnavailableError(
                f"Analyzer timed out after {timeout}s",
                {"conversation_id": transcript.conversation_id},
            ) from e
        except AnalysisUnavailableError:
            raise
        except Exception as e:
            raise AnalysisUnavailableError(
                f"Analyzer failed: {type(e).__name__}: {e}",
                {"conversation_id": transcript.conversation_id},
            ) from e

    def run_analysis(self, conversation_id: uuid.UUID) -> AnalysisResultResponse:
        """
        Analyze a conversation now and store the result.

        Raises:
            NotFoundError: Conversation missing or deleted
            AnalysisUnavailableError: Analyzer failed or timed out
            ValidationError: Analyzer returned an invalid payload
        """
        start = time.time()
        transcript = self.build_transcript(conversation_id)
        raw = self._call_analyzer(transcript)
        payload = AnalysisPayload.from_raw(raw)
        result = self.upsert_result(conversation_id, payload)

        elapsed_ms = int((time.time() - start) * 1000)
        logger.info(
            f"Analyzed conversation {conversation_id} with {payload.model_used}: "
            f"revision {result.revision}, {len(transcript.messages)} messages, "
            f"{elapsed_ms}ms"
        )
        return result

    def upsert_result(
        self,
        conversation_id: uuid.UUID,
        payload: Union[AnalysisPayload, dict[str, Any]],
    ) -> AnalysisResultResponse:
        """
        Store a result as the conversation's current analysis.

        The previous result is overwritten entirely and the revision bumped.
        The conversation's summary fields, ``last_analyzed_at`` and the
        pending recommendations change in the same transaction.

        Raises:
            ValidationError: Payload fields missing or out of range
            NotFoundError: Conversation missing or deleted
        """
        payload = AnalysisPayload.from_raw(payload)

        def _upsert() -> tuple[AnalysisResultResponse, str]:
            with self.database.session_scope() as session:
                conv_repo = ConversationRepository(session)
                # The UPDATE locks the conversation row for the rest of the transaction
                updated = conv_repo.set_analysis_fields(
                    conversation_id,
                    summary=payload.summary,
                    key_topics=list(payload.main_topics),
                    problem_categories=list(payload.problem_types),
                    auto_tags=list(payload.auto_tags),
                    complexity_level=payload.complexity_score,
                    analyzed_at=datetime.now(timezone.utc),
                )
                if not updated:
                    raise NotFoundError("Conversation", conversation_id)

                conversation = conv_repo.get_active(conversation_id)
                result = AnalysisResultRepository(session).upsert(conversation_id, payload)
                self.recommendation_service.generate_recommendations(
                    session, conversation_id, result, conversation.message_count
                )
                return AnalysisResultResponse.model_validate(result), conversation.owner_id

        response, owner_id = run_with_retry(_upsert, self.retry_config, "upsert_result")
        self.cache.invalidate_conversation(conversation_id)
        self.cache.invalidate_owner(owner_id)
        return response

    def get_result(
        self, conversation_id: uuid.UUID, owner_id: Optional[str] = None
    ) -> AnalysisResultResponse:
        """
        Get the current analysis of a conversation.

        Raises:
            NotFoundError: Conversation missing or not analyzed yet
            ForbiddenError: ``owner_id`` given and not the owner
        """

        def _load() -> tuple[str, AnalysisResultResponse]:
            with self.database.session_scope() as session:
                conversation = ConversationRepository(session).get_active(conversation_id)
                if conversation is None:
                    raise NotFoundError("Conversation", conversation_id)
                result = AnalysisResultRepository(session).get_by_conversation(
                    conversation_id
                )
                if result is None:
                    raise NotFoundError("AnalysisResult", conversation_id)
                return conversation.owner_id, AnalysisResultResponse.model_validate(result)

        result_owner, response = self.cache.get_or_load(
            analysis_key(conversation_id),
            lambda: run_with_retry(_load, self.retry_config, "get_result"),
        )
        if owner_id is not None and result_owner != owner_id:
            raise ForbiddenError(
                f"Conversation {conversation_id} does not belong to {owner_id}",
                {"conversation_id": str(conversation_id)},
            )
        return response

    def refresh_analysis(
        self, conversation_id: uuid.UUID, owner_id: str
    ) -> AnalysisResultResponse:
        """Re-analyze a conversation on the owner's request, synchronously."""
        with self.database.session_scope() as session:
            load_owned_conversation(session, conversation_id, owner_id)
        return self.run_analysis(conversation_id)

    def batch_analyze(
        self, conversation_ids: Iterable[uuid.UUID]
    ) -> BatchAnalysisResponse:
        """Analyze several conversations, reporting success or error per id."""
        response = BatchAnalysisResponse()
        for conversation_id in conversation_ids:
            try:
                result = self.run_analysis(conversation_id)
                response.results.append(
                    BatchAnalysisItem(
                        conversation_id=conversation_id,
                        success=True,
                        revision=result.revision,
                    )
                )
                response.succeeded += 1
            except ConvotagError as e:
                logger.warning(f"Batch analysis failed for {conversation_id}: {e.message}")
                response.results.append(
                    BatchAnalysisItem(
                        conversation_id=conversation_id, success=False, error=e.message
                    )
                )
                response.failed += 1
        return response

    def shutdown(self, timeout: float = 0.0) -> int:
        """
        Wait up to ``timeout`` seconds for in-flight analyzer calls.

        Returns:
            Number of calls still running (they are daemon threads and are
            dropped at interpreter exit)
        """
        deadline = time.monotonic() + timeout
        with self._calls_lock:
            calls = list(self._calls)
        for thread in calls:
            thread.join(max(0.0, deadline - time.monotonic()))
        remaining = sum(1 for thread in calls if thread.is_alive())
        if remaining:
            logger.warning(f"{remaining} analyzer call(s) still running at shutdown")
        return remaining
