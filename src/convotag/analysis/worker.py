"""
Background worker for processing analysis jobs.

A small, bounded pool of polling threads claims jobs from the analysis
queue and runs them through the analysis service. Analysis failures are
recorded on the job and never reach the code that appended the message.
"""

import logging
import threading
import time
from typing import TYPE_CHECKING, Optional

from sqlalchemy.exc import OperationalError

from convotag.analysis.job_queue import AnalysisJobQueue
from convotag.config import settings
from convotag.db.connection import Database

if TYPE_CHECKING:
    from convotag.services.analysis_service import AnalysisService

logger = logging.getLogger(__name__)


class AnalysisWorker:
    """
    Background worker that processes analysis jobs from the queue.

    Features:
    - Bounded number of polling threads
    - Woken immediately by the dispatcher instead of waiting a full poll
    - Graceful shutdown support
    - Stale job cleanup
    """

    def __init__(
        self,
        database: Database,
        analysis_service: "AnalysisService",
        num_threads: Optional[int] = None,
        poll_interval: Optional[float] = None,
        stale_job_timeout_minutes: Optional[int] = None,
        purge_completed_days: Optional[int] = None,
    ):
        """
        Initialize the analysis worker.

        Args:
            database: Database holding the job queue
            analysis_service: Service that runs and stores one analysis
            num_threads: Polling threads (default: analysis_max_workers)
            poll_interval: Seconds between queue polls when idle
            stale_job_timeout_minutes: Reset jobs processing longer than this
            purge_completed_days: Delete finished jobs older than this
        """
        self.database = database
        self.analysis_service = analysis_service
        self.num_threads = num_threads or settings.analysis_max_workers
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.analysis_poll_interval
        )
        self.stale_job_timeout_minutes = (
            stale_job_timeout_minutes or settings.analysis_stale_job_minutes
        )
        self.purge_completed_days = purge_completed_days or settings.analysis_purge_days

        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._stats_lock = threading.Lock()
        self._jobs_processed = 0
        self._jobs_succeeded = 0
        self._jobs_failed = 0
        self._last_job_time: Optional[float] = None

    def start(self) -> None:
        """Start the polling threads."""
        if self.is_running:
            logger.warning("Analysis worker is already running")
            return

        self._stop_event.clear()
        self._cleanup()
        self._threads = [
            threading.Thread(
                target=self.run,
                daemon=True,
                name=f"analysis-worker-{i}",
            )
            for i in range(self.num_threads)
        ]
        for thread in self._threads:
            thread.start()
        logger.info(f"Started analysis worker with {self.num_threads} threads")

    def stop(self, timeout: float = 10.0) -> None:
        """Signal the worker to stop and wait for its threads."""
        logger.info("Analysis worker stop requested")
        self._stop_event.set()
        self._wake_event.set()

        for thread in self._threads:
            thread.join(timeout=timeout)
            if thread.is_alive():
                logger.warning(
                    f"Analysis worker thread {thread.name} did not stop within {timeout}s"
                )
        self._threads = []

        logger.info(
            f"Analysis worker stopped. "
            f"Processed: {self._jobs_processed}, "
            f"Succeeded: {self._jobs_succeeded}, "
            f"Failed: {self._jobs_failed}"
        )

    def wake(self) -> None:
        """Wake idle threads so a freshly enqueued job is picked up promptly."""
        self._wake_event.set()

    @property
    def is_running(self) -> bool:
        """Check if any worker thread is alive."""
        return any(thread.is_alive() for thread in self._threads)

    def run(self) -> None:
        """
        Main worker loop for one thread.

        Polls the job queue and processes jobs until stopped.
        """
        while not self._stop_event.is_set():
            try:
                job_processed = self.process_next()

                if not job_processed:
                    # No jobs available - wait for a wake-up or the poll interval
                    self._wake_event.wait(self.poll_interval)
                    self._wake_event.clear()
            except OperationalError as e:
                logger.warning(f"Analysis worker DB unavailable: {e}")
                # Back off briefly before retrying
                self._stop_event.wait(5.0)
            except Exception as e:
                logger.error(f"Error in analysis worker loop: {e}", exc_info=True)
                # Brief pause before retrying
                self._stop_event.wait(1.0)

    def process_next(self) -> bool:
        """
        Process the next job from the queue.

        Returns:
            True if a job was processed, False if queue is empty
        """
        # Persist the claim before processing so a crash leaves it visible
        # to stale-job cleanup instead of silently pending.
        with self.database.session_scope() as session:
            job = AnalysisJobQueue(session).claim_next()
            if not job:
                return False
            job_id = job.id
            conversation_id = job.conversation_id

        logger.info(f"Processing analysis job {job_id} for conversation {conversation_id}")

        error: Optional[str] = None
        try:
            self.analysis_service.run_analysis(conversation_id)
        except Exception as e:
            error = f"{type(e).__name__}: {e}"
            logger.warning(
                f"Failed analysis job {job_id} for conversation {conversation_id}: {error}"
            )

        with self.database.session_scope() as session:
            AnalysisJobQueue(session).complete(job_id, success=error is None, error=error)

        with self._stats_lock:
            self._jobs_processed += 1
            if error is None:
                self._jobs_succeeded += 1
            else:
                self._jobs_failed += 1
            self._last_job_time = time.time()

        return True

    def drain(self, max_jobs: Optional[int] = None) -> int:
        """
        Process jobs on the calling thread until the queue is empty.

        Args:
            max_jobs: Stop after this many jobs

        Returns:
            Number of jobs processed
        """
        processed = 0
        while max_jobs is None or processed < max_jobs:
            if not self.process_next():
                break
            processed += 1
        return processed

    def _cleanup(self) -> None:
        """Perform periodic cleanup tasks."""
        try:
            with self.database.session_scope() as session:
                queue = AnalysisJobQueue(session)

                # Reset any stale processing jobs
                stale_count = queue.cleanup_stale_jobs(self.stale_job_timeout_minutes)
                if stale_count:
                    logger.info(f"Reset {stale_count} stale analysis jobs")

                # Purge old finished jobs
                purged_count = queue.purge_completed(self.purge_completed_days)
                if purged_count:
                    logger.info(f"Purged {purged_count} old analysis jobs")
        except OperationalError as e:
            logger.warning(f"Analysis worker cleanup skipped (DB unavailable): {e}")

    def get_worker_stats(self) -> dict[str, object]:
        """Get statistics from the analysis worker."""
        with self._stats_lock:
            return {
                "running": self.is_running,
                "threads": len(self._threads),
                "jobs_processed": self._jobs_processed,
                "jobs_succeeded": self._jobs_succeeded,
                "jobs_failed": self._jobs_failed,
                "last_job_time": self._last_job_time,
            }
