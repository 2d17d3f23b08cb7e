"""
Analysis job queue service.

Provides a database-backed job queue for async analysis, decoupling the
analyzer call from the message append that triggered it.
"""

import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from sqlalchemy import and_, exists, func, update
from sqlalchemy.orm import Session, aliased

from convotag.db.connection import Database
from convotag.models.db import AnalysisJob, AnalysisJobStatus

logger = logging.getLogger(__name__)

# Pending jobs examined per claim attempt
CLAIM_BATCH = 5


@dataclass
class QueueStats:
    """Statistics about the analysis job queue."""

    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0

    @property
    def active(self) -> int:
        """Jobs that are pending or processing."""
        return self.pending + self.processing


class AnalysisJobQueue:
    """
    Database-backed job queue for async analysis.

    Uses SELECT FOR UPDATE SKIP LOCKED on PostgreSQL plus a conditional
    status UPDATE, so a job is claimed by exactly one worker on any backend.
    """

    def __init__(self, session: Session):
        self.session = session

    def enqueue(
        self,
        conversation_id: uuid.UUID,
        priority: int = 0,
    ) -> uuid.UUID:
        """
        Add a conversation to the analysis queue.

        A conversation has at most one pending job; a job that is already
        processing does not absorb new requests, because it may have read
        the transcript before the latest messages arrived.

        Args:
            conversation_id: ID of conversation to analyze
            priority: Job priority (0=highest, higher=lower priority)

        Returns:
            UUID of the new or already pending job
        """
        existing = (
            self.session.query(AnalysisJob)
            .filter(
                AnalysisJob.conversation_id == conversation_id,
                AnalysisJob.status == AnalysisJobStatus.PENDING.value,
            )
            .first()
        )

        if existing:
            logger.debug(
                f"Job already pending for conversation {conversation_id}: {existing.id}"
            )
            return existing.id

        job = AnalysisJob(
            conversation_id=conversation_id,
            priority=priority,
            status=AnalysisJobStatus.PENDING.value,
        )
        self.session.add(job)
        self.session.flush()  # Get the ID without committing

        logger.debug(f"Enqueued analysis job {job.id} for conversation {conversation_id}")
        return job.id

    def claim_next(self) -> Optional[AnalysisJob]:
        """
        Atomically claim the next pending job.

        Skips conversations that already have a job processing, so one
        conversation is never analyzed by two workers at once.

        Returns:
            AnalysisJob if one is available, None otherwise
        """
        running = aliased(AnalysisJob)
        busy = exists().where(
            and_(
                running.conversation_id == AnalysisJob.conversation_id,
                running.status == AnalysisJobStatus.PROCESSING.value,
            )
        )
        candidates = (
            self.session.query(AnalysisJob)
            .filter(AnalysisJob.status == AnalysisJobStatus.PENDING.value, ~busy)
            .order_by(AnalysisJob.priority, AnalysisJob.created_at)
            .limit(CLAIM_BATCH)
            .with_for_update(skip_locked=True, of=AnalysisJob)
            .all()
        )

        now = datetime.now(timezone.utc)
        for job in candidates:
            claimed = self.session.execute(
                update(AnalysisJob)
                .where(
                    AnalysisJob.id == job.id,
                    AnalysisJob.status == AnalysisJobStatus.PENDING.value,
                )
                .values(
                    status=AnalysisJobStatus.PROCESSING.value,
                    started_at=now,
                    attempts=AnalysisJob.attempts + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount == 0:
                # Another worker got there first
                continue

            self.session.refresh(job)
            logger.debug(
                f"Claimed analysis job {job.id} (attempt {job.attempts})"
            )
            return job

        return None

    def complete(
        self,
        job_id: uuid.UUID,
        success: bool,
        error: Optional[str] = None,
    ) -> None:
        """
        Mark a job as completed or failed.

        Args:
            job_id: ID of the job
            success: Whether analysis succeeded
            error: Error message if failed
        """
        job = self.session.query(AnalysisJob).filter(AnalysisJob.id == job_id).first()
        if not job:
            logger.warning(f"Job {job_id} not found when trying to complete")
            return

        job.completed_at = datetime.now(timezone.utc)

        if success:
            job.status = AnalysisJobStatus.COMPLETED.value
            job.error_message = None
            logger.info(f"Analysis job {job_id} completed successfully")
        else:
            # Failures are terminal; the trigger policy enqueues a new job
            job.status = AnalysisJobStatus.FAILED.value
            job.error_message = error
            logger.warning(f"Analysis job {job_id} failed: {error}")

        self.session.flush()

    def get_stats(self) -> QueueStats:
        """
        Get queue statistics.

        Returns:
            QueueStats with counts by status
        """
        results = (
            self.session.query(AnalysisJob.status, func.count(AnalysisJob.id))
            .group_by(AnalysisJob.status)
            .all()
        )

        stats = QueueStats()
        for status, count in results:
            if status == AnalysisJobStatus.PENDING.value:
                stats.pending = count
            elif status == AnalysisJobStatus.PROCESSING.value:
                stats.processing = count
            elif status == AnalysisJobStatus.COMPLETED.value:
                stats.completed = count
            elif status == AnalysisJobStatus.FAILED.value:
                stats.failed = count
            stats.total += count

        return stats

    def cleanup_stale_jobs(self, timeout_minutes: int = 30) -> int:
        """
        Reset jobs that have been processing for too long.

        This handles cases where a worker crashed mid-job.

        Args:
            timeout_minutes: Time after which a processing job is considered stale

        Returns:
            Number of jobs reset
        """
        stale_threshold = datetime.now(timezone.utc) - timedelta(minutes=timeout_minutes)

        result = (
            self.session.query(AnalysisJob)
            .filter(
                AnalysisJob.status == AnalysisJobStatus.PROCESSING.value,
                AnalysisJob.started_at < stale_threshold,
            )
            .update(
                {
                    AnalysisJob.status: AnalysisJobStatus.PENDING.value,
                    AnalysisJob.started_at: None,
                },
                synchronize_session=False,
            )
        )

        if result > 0:
            logger.warning(f"Reset {result} stale analysis jobs")

        return result

    def purge_completed(self, days: int = 7) -> int:
        """
        Delete finished jobs older than specified days.

        Args:
            days: Age threshold for deletion

        Returns:
            Number of jobs deleted
        """
        threshold = datetime.now(timezone.utc) - timedelta(days=days)

        result = (
            self.session.query(AnalysisJob)
            .filter(
                AnalysisJob.status.in_(
                    [AnalysisJobStatus.COMPLETED.value, AnalysisJobStatus.FAILED.value]
                ),
                AnalysisJob.completed_at < threshold,
            )
            .delete(synchronize_session=False)
        )

        if result > 0:
            logger.info(f"Purged {result} finished analysis jobs older than {days} days")

        return result


class AnalysisDispatcher:
    """
    Hands triggered analyses to the job queue.

    Each dispatch commits its own transaction, separate from the message
    append that triggered it, then wakes any registered worker.
    """

    def __init__(self, database: Database, enabled: bool = True):
        self.database = database
        self.enabled = enabled
        self._listeners: list[Callable[[], None]] = []
        self._lock = threading.Lock()

    def add_listener(self, callback: Callable[[], None]) -> None:
        """Register a callback invoked after every successful enqueue."""
        with self._lock:
            self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[], None]) -> None:
        with self._lock:
            if callback in self._listeners:
                self._listeners.remove(callback)

    def dispatch(self, conversation_id: uuid.UUID, priority: int = 0) -> Optional[uuid.UUID]:
        """
        Enqueue analysis for a conversation.

        Returns:
            The job id, or None when analysis is disabled
        """
        if not self.enabled:
            logger.debug(f"Analysis disabled, not enqueuing {conversation_id}")
            return None

        with self.database.session_scope() as session:
            job_id = AnalysisJobQueue(session).enqueue(conversation_id, priority=priority)

        with self._lock:
            listeners = list(self._listeners)
        for callback in listeners:
            callback()
        return job_id
