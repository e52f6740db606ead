"""
Scheduling for field predictions.

Two shapes share the same JobRunner (per-field timeout and bounded tries):

- PredictionQueue: fields are enqueued as they are submitted and processed
  by a fixed pool of asyncio workers.
- SweepScheduler: a timer with jitter scans the store for fields without a
  resolved prediction. It either feeds the queue or, with no queue, runs
  the fields one at a time itself.
"""
import asyncio
import random
from dataclasses import dataclass, field
from typing import Iterable, Optional, Set

from .config import settings
from .database import Database
from .logging_config import get_logger, log_context
from .orchestrator import FieldOutcome, PredictionOrchestrator, rollup_submission

logger = get_logger(__name__)


class JobRunner:
    """Runs one field's prediction with a hard timeout and a bounded number of tries"""

    def __init__(self, orchestrator: PredictionOrchestrator, timeout: float = None, tries: int = None):
        self.orchestrator = orchestrator
        self.timeout = timeout if timeout is not None else settings.PREDICTION_JOB_TIMEOUT
        self.tries = max(tries if tries is not None else settings.PREDICTION_JOB_TRIES, 1)

    async def run(self, field_id: int) -> Optional[FieldOutcome]:
        # Filled by the first successful claim; later tries may only take that claim over
        claim = {}
        last_error = None
        for attempt in range(1, self.tries + 1):
            try:
                return await asyncio.wait_for(
                    self.orchestrator.process_field(field_id, claim=claim),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                last_error = f"Prediction job timed out after {self.timeout:g}s"
            except Exception as e:
                last_error = f"Prediction job error: {e}"

            logger.warning(
                "Prediction job attempt failed",
                extra=log_context(field_id=field_id, attempt=attempt, max_tries=self.tries, error=last_error)
            )

        if 'started_at' not in claim:
            logger.warning(
                "Prediction job gave up before claiming the field, leaving it for the sweep",
                extra=log_context(field_id=field_id, error=last_error)
            )
            return None
        return self.orchestrator.fail_field(field_id, last_error, started_at=claim['started_at'])


class PredictionQueue:
    """In-process job queue with a fixed worker pool"""

    def __init__(self, runner: JobRunner, workers: int = None):
        self.runner = runner
        self.worker_count = max(workers if workers is not None else settings.PREDICTION_WORKERS, 1)
        self._queue: asyncio.Queue = asyncio.Queue()
        self._pending: Set[int] = set()
        self._workers = []
        self._accepting = False

    @property
    def running(self) -> bool:
        return bool(self._workers)

    def start(self):
        if self._workers:
            return
        self._accepting = True
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"prediction-worker-{index}")
            for index in range(self.worker_count)
        ]
        logger.info("Prediction workers started", extra=log_context(workers=self.worker_count))

    def enqueue(self, field_id: int) -> bool:
        """Queue a field unless it is already queued or running here"""
        if not self._accepting or field_id in self._pending:
            return False
        self._pending.add(field_id)
        self._queue.put_nowait(field_id)
        logger.info("Field dispatched", extra=log_context(field_id=field_id))
        return True

    def enqueue_many(self, field_ids: Iterable[int]) -> int:
        return sum(1 for field_id in field_ids if self.enqueue(field_id))

    async def _worker(self, index: int):
        while True:
            field_id = await self._queue.get()
            try:
                await self.runner.run(field_id)
            except Exception:
                logger.error(
                    "Prediction worker error",
                    extra=log_context(field_id=field_id, worker=index),
                    exc_info=True
                )
            finally:
                self._pending.discard(field_id)
                self._queue.task_done()

    async def join(self):
        await self._queue.join()

    async def stop(self, drain_timeout: Optional[float] = None):
        """Stop accepting work, let queued jobs finish (up to drain_timeout), then stop workers"""
        self._accepting = False
        if drain_timeout is None or drain_timeout > 0:
            try:
                await asyncio.wait_for(self._queue.join(), timeout=drain_timeout)
            except asyncio.TimeoutError:
                logger.warning("Prediction queue not drained before shutdown",
                               extra=log_context(remaining=self._queue.qsize()))
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("Prediction workers stopped")


@dataclass
class SweepReport:
    found: int = 0
    dispatched: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    submissions_rolled_up: list = field(default_factory=list)


class SweepScheduler:
    """Timer-driven scan for fields that still need a prediction"""

    def __init__(self, database: Database, runner: JobRunner, queue: Optional[PredictionQueue] = None,
                 interval: float = None, jitter: float = None, stale_after: float = None):
        self.db = database
        self.runner = runner
        self.queue = queue
        self.interval = interval if interval is not None else settings.SWEEP_INTERVAL
        self.jitter = jitter if jitter is not None else settings.SWEEP_JITTER
        self.stale_after = stale_after if stale_after is not None else settings.STALE_PROCESSING_AFTER
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    async def sweep_once(self) -> SweepReport:
        """One pass over unresolved fields, then a rollup of open submissions"""
        report = SweepReport()
        candidates = self.db.find_unresolved_fields(stale_after=self.stale_after)
        report.found = len(candidates)

        for candidate in candidates:
            if self._stop.is_set():
                break
            field_id = candidate['field_id']
            if self.queue is not None:
                if self.queue.enqueue(field_id):
                    report.dispatched += 1
                else:
                    report.skipped += 1
                continue

            outcome = await self.runner.run(field_id)
            if outcome is None:
                report.skipped += 1
            elif outcome.status == 'completed':
                report.completed += 1
            else:
                report.failed += 1

        for submission_id in self.db.find_open_submissions():
            status = rollup_submission(self.db, submission_id)
            if status in ('completed', 'failed'):
                report.submissions_rolled_up.append(submission_id)

        if report.found:
            logger.info(
                "Prediction sweep finished",
                extra=log_context(found=report.found, dispatched=report.dispatched,
                                  completed=report.completed, failed=report.failed,
                                  skipped=report.skipped)
            )
        return report

    def next_delay(self) -> float:
        return self.interval + (random.uniform(0, self.jitter) if self.jitter else 0)

    async def run_forever(self):
        """Sweep until stop() is called"""
        logger.info("Prediction sweep started", extra=log_context(interval=self.interval))
        while not self._stop.is_set():
            try:
                await self.sweep_once()
            except Exception:
                logger.error("Prediction sweep error", exc_info=True)
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.next_delay())
            except asyncio.TimeoutError:
                pass
        logger.info("Prediction sweep stopped")

    def start(self):
        if self._task is None:
            self._stop.clear()
            self._task = asyncio.create_task(self.run_forever(), name="prediction-sweep")

    def stop(self):
        self._stop.set()

    async def wait_stopped(self):
        if self._task is not None:
            await self._task
            self._task = None
