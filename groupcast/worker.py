import logging
import signal
import sqlite3
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import timedelta
from typing import Callable, Dict, List, Optional

from .config import WorkerConfig
from .db import connect_db
from .dispatch import Dispatcher
from .filters import resolve_recipients
from .models import FAILED, DirectoryUnavailable, DispatchResult, InvalidMessageError, Job
from .provider import CachedDirectory, EvolutionClient
from .repository import (
    fetch_due_jobs, record_failure, record_outcome, requeue_stuck,
    schedule_next_occurrence, touch_claim, try_claim,
)
from .utils import utcnow

LOGGER = logging.getLogger(__name__)


def _group_batches(jobs: List[Job]) -> List[List[Job]]:
    """Chunks of one batch travel together, in chunk order; other jobs alone."""
    units: List[List[Job]] = []
    batches: Dict[str, List[Job]] = {}
    for job in jobs:
        if not job.batch_id:
            units.append([job])
        elif job.batch_id in batches:
            batches[job.batch_id].append(job)
        else:
            batches[job.batch_id] = [job]
            units.append(batches[job.batch_id])
    for unit in units:
        unit.sort(key=lambda j: (j.chunk_index or 0, j.id))
    return units


class Scheduler:
    """
    Polls the job store, claims due jobs and runs them on a bounded pool.

    Coordination between scheduler processes happens only through the
    conditional update in `try_claim`; a job that loses the race is skipped.
    Each job runs sequentially on one pool thread with its own connection.
    """

    def __init__(
        self,
        config: WorkerConfig,
        *,
        connect: Optional[Callable[[], sqlite3.Connection]] = None,
        provider=None,
        directory=None,
        clock=utcnow,
        sleep: Callable[[float], None] = time.sleep,
        wait: Optional[Callable[[float], object]] = None,
    ):
        self.config = config
        self._connect = connect or (lambda: connect_db(config.db_path))
        self._owns_provider = provider is None
        self._provider = provider or EvolutionClient(
            config.provider_url, config.api_key, timeout=config.request_timeout
        )
        self._directory = directory or CachedDirectory(self._provider.list_groups, ttl=config.directory_ttl)
        self._clock = clock
        self._sleep = sleep
        self.dispatcher = Dispatcher(self._provider, rate_limit=config.rate_limit, sleep=sleep)

        self._stop = threading.Event()
        # Poll sleep; stop() interrupts it.
        self._wait = wait or self._stop.wait
        self._pool = ThreadPoolExecutor(max_workers=config.worker_pool_size, thread_name_prefix="groupcast")
        self._inflight: set = set()
        self._running_ids: set = set()
        self._inflight_lock = threading.Lock()

    # ---------- claiming ----------
    def claim(self, conn, job: Job) -> bool:
        if try_claim(conn, job.id, self._clock()):
            return True
        LOGGER.info("[job #%s] Already claimed by another worker, skipping", job.id)
        return False

    def _free_slots(self) -> int:
        with self._inflight_lock:
            return self.config.worker_pool_size - len(self._inflight)

    def _track(self, future: Future):
        with self._inflight_lock:
            self._inflight.add(future)

        def _done(f: Future):
            with self._inflight_lock:
                self._inflight.discard(f)
            if f.exception() is not None:
                LOGGER.error("Worker task crashed: %r", f.exception())

        future.add_done_callback(_done)

    # ---------- one poll ----------
    def run_once(self, wait: bool = False) -> int:
        """Claim what is due (up to the free pool slots) and start it. Returns jobs claimed."""
        now = self._clock()
        futures = []
        claimed = 0
        conn = self._connect()
        try:
            if self.config.stuck_timeout:
                with self._inflight_lock:
                    running = list(self._running_ids)
                requeued = requeue_stuck(
                    conn, now - timedelta(seconds=self.config.stuck_timeout), exclude=running
                )
                if requeued:
                    LOGGER.warning("Re-queued %d job(s) stuck in processing", requeued)

            due = fetch_due_jobs(conn, now)
            if due:
                LOGGER.info("Found %d due job(s)", len(due))
            free = self._free_slots()
            for unit in _group_batches(due):
                if free <= 0:
                    LOGGER.debug("Worker pool is full; leaving the rest for the next poll")
                    break
                won = [job for job in unit if self.claim(conn, job)]
                if not won:
                    continue
                claimed += len(won)
                with self._inflight_lock:
                    self._running_ids.update(job.id for job in won)
                future = self._pool.submit(self._run_unit, won)
                self._track(future)
                futures.append(future)
                free -= 1
        finally:
            conn.close()

        if wait:
            for f in futures:
                f.result()
        return claimed

    def _run_unit(self, jobs: List[Job]):
        try:
            conn = self._connect()
            try:
                for i, job in enumerate(jobs):
                    if i and self.config.rate_limit > 0:
                        self._sleep(self.config.rate_limit)
                    self.process(conn, job)
            finally:
                conn.close()
        finally:
            with self._inflight_lock:
                self._running_ids.difference_update(job.id for job in jobs)

    # ---------- one job ----------
    def process(self, conn, job: Job) -> Optional[DispatchResult]:
        LOGGER.info("[job #%s] Processing %s message via %s", job.id, job.message.kind, job.instance)
        result = None
        try:
            job.message.validate()
            groups = self._directory.list_groups(job.instance)
            recipients = resolve_recipients(job.targeting, groups)
            LOGGER.info("[job #%s] Found %d target group(s)", job.id, len(recipients))
            result = self.dispatcher.dispatch(
                job, recipients,
                on_failure=lambda recipient_id, error: record_failure(conn, job.id, recipient_id, error),
                on_attempt=lambda: touch_claim(conn, job.id, self._clock()),
            )
            status, summary = result.status, result.summary
        except InvalidMessageError as e:
            status, summary = FAILED, f"invalid message: {e}"
        except DirectoryUnavailable as e:
            status, summary = FAILED, f"directory unavailable: {e}"
        except Exception as e:
            LOGGER.exception("[job #%s] Unexpected error", job.id)
            status, summary = FAILED, f"error: {e}"

        if status == FAILED and result is None:
            LOGGER.error("[job #%s] Failed before sending: %s", job.id, summary)

        try:
            record_outcome(conn, job.id, status, summary, self._clock())
        except sqlite3.Error as e:
            LOGGER.critical(
                "[job #%s] Could not record outcome %s (%s): %s. Job stays in processing.",
                job.id, status, summary, e,
            )
            return result
        LOGGER.info("[job #%s] Completed: %s (%s)", job.id, status, summary)

        if job.recurrence and result is not None and result.succeeded > 0:
            try:
                next_id = schedule_next_occurrence(conn, job)
                LOGGER.info("[job #%s] Spawned next %s occurrence #%s", job.id, job.recurrence, next_id)
            except (sqlite3.Error, RuntimeError) as e:
                LOGGER.error("[job #%s] Failed to spawn next occurrence: %s", job.id, e)
        return result

    # ---------- loop ----------
    def run_forever(self):
        failures = 0
        LOGGER.info("Scheduler started. Polling every %.1fs", self.config.poll_interval)
        try:
            while not self._stop.is_set():
                try:
                    self.run_once()
                    failures = 0
                    delay = self.config.poll_interval
                except Exception as e:
                    failures += 1
                    delay = min(self.config.max_backoff, max(self.config.poll_interval, 1.0) * 2 ** failures)
                    LOGGER.error("Scheduler iteration failed (%s); retrying in %.1fs", e, delay)
                self._wait(delay)
        finally:
            self.shutdown()

    def stop(self):
        self._stop.set()

    def shutdown(self):
        # In-flight jobs run to completion.
        self._pool.shutdown(wait=True)
        if self._owns_provider:
            self._provider.close()
        LOGGER.info("Scheduler stopped.")


def setup_signal_handlers(scheduler: Scheduler):
    def _handler(signum, frame):
        LOGGER.info("Received signal %s. Stopping scheduler", signum)
        scheduler.stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # not in the main thread
            pass


def start_scheduler(config: WorkerConfig):
    scheduler = Scheduler(config)
    setup_signal_handlers(scheduler)
    scheduler.run_forever()
