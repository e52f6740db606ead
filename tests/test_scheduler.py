import asyncio

from agrisense.errors import PersistenceError
from agrisense.orchestrator import FieldOutcome, PredictionOrchestrator
from agrisense.scheduler import JobRunner, PredictionQueue, SweepScheduler

from conftest import field_payload


class HangingAI:
    """AI client whose calls never return in time"""

    def __init__(self):
        self.calls = 0

    async def predict(self, context):
        self.calls += 1
        await asyncio.sleep(60)


class CrashOnceWeather:
    """Weather client whose first lookup blows up with a non-provider error"""

    def __init__(self):
        self.calls = 0

    async def get_current(self, latitude, longitude):
        self.calls += 1
        if self.calls == 1:
            raise RuntimeError("weather worker crashed")
        return None


class RecordingOrchestrator:
    """Stands in for PredictionOrchestrator in queue tests"""

    def __init__(self, delay=0.0):
        self.delay = delay
        self.processed = []
        self.failed = []

    async def process_field(self, field_id, claim=None):
        await asyncio.sleep(self.delay)
        self.processed.append((field_id, dict(claim or {})))
        if claim is not None:
            claim["started_at"] = "2025-10-14T15:00:00+00:00"
        return FieldOutcome(field_id, 1, "completed", "fallback")

    def fail_field(self, field_id, error, started_at=None):
        self.failed.append((field_id, error, started_at))
        return FieldOutcome(field_id, 1, "failed", error=error)


class TestJobRunner:
    """Per-field timeout and bounded tries"""

    async def test_single_try_on_success(self):
        orchestrator = RecordingOrchestrator()
        outcome = await JobRunner(orchestrator, timeout=1, tries=3).run(7)
        assert outcome.status == "completed"
        assert orchestrator.processed == [(7, {})]

    async def test_timeouts_exhaust_tries_then_fail(self, database, retry_policy, make_submission):
        ai = HangingAI()
        orchestrator = PredictionOrchestrator(database, ai, None, retry_policy)
        data = make_submission(field_payload())
        field_id = database.get_fields(data["submission_id"])[0]["id"]

        outcome = await JobRunner(orchestrator, timeout=0.05, tries=2).run(field_id)

        assert ai.calls == 2
        assert outcome.status == "failed"
        prediction = database.get_prediction(field_id)
        assert prediction["processing_status"] == "failed"
        assert "timed out" in prediction["processing_error"]
        assert database.get_submission(data["submission_id"])["status"] == "failed"

    async def test_unexpected_error_retried_on_own_claim(self):
        class Flaky(RecordingOrchestrator):
            async def process_field(self, field_id, claim=None):
                if "started_at" not in claim:
                    claim["started_at"] = "2025-10-14T14:59:00+00:00"
                    raise RuntimeError("worker crashed")
                return await super().process_field(field_id, claim)

        orchestrator = Flaky()
        outcome = await JobRunner(orchestrator, timeout=1, tries=2).run(3)

        assert outcome.status == "completed"
        assert orchestrator.processed == [(3, {"started_at": "2025-10-14T14:59:00+00:00"})]
        assert orchestrator.failed == []

    async def test_crash_after_claim_retakes_own_row(self, database, retry_policy, offline_ai, make_submission):
        weather = CrashOnceWeather()
        orchestrator = PredictionOrchestrator(database, offline_ai, weather, retry_policy)
        data = make_submission(field_payload())
        field_id = database.get_fields(data["submission_id"])[0]["id"]

        outcome = await JobRunner(orchestrator, timeout=1, tries=2).run(field_id)

        assert weather.calls == 2
        assert outcome.status == "completed"
        assert database.get_prediction(field_id)["processing_status"] == "completed"

    async def test_error_before_claim_leaves_other_claim_alone(self, database, retry_policy, offline_ai,
                                                               make_submission, monkeypatch):
        """A retry after a pre-claim error does not reset another worker's live claim"""
        orchestrator = PredictionOrchestrator(database, offline_ai, None, retry_policy)
        data = make_submission(field_payload())
        field_id = database.get_fields(data["submission_id"])[0]["id"]
        other = database.claim_field(field_id, {"owner": "other worker"})

        real_get_field = database.get_field
        lookups = []

        def locked_once(field_id):
            lookups.append(field_id)
            if len(lookups) == 1:
                raise PersistenceError("Database error: database is locked")
            return real_get_field(field_id)

        monkeypatch.setattr(database, "get_field", locked_once)

        outcome = await JobRunner(orchestrator, timeout=1, tries=2).run(field_id)

        assert outcome is None
        assert len(lookups) == 2
        prediction = database.get_prediction(field_id)
        assert prediction["processing_status"] == "processing"
        assert prediction["processing_started_at"] == other["processing_started_at"]
        assert prediction["ai_metadata"] == {"owner": "other worker"}
        assert database.get_submission(data["submission_id"])["status"] == "processing"

    async def test_never_claimed_is_not_failed(self, database, retry_policy, offline_ai,
                                               make_submission, monkeypatch):
        orchestrator = PredictionOrchestrator(database, offline_ai, None, retry_policy)
        data = make_submission(field_payload())
        field_id = database.get_fields(data["submission_id"])[0]["id"]

        def locked(*args, **kwargs):
            raise PersistenceError("Database error: database is locked")

        monkeypatch.setattr(database, "claim_field", locked)

        outcome = await JobRunner(orchestrator, timeout=1, tries=2).run(field_id)

        assert outcome is None
        assert database.get_prediction(field_id) is None


class TestPredictionQueue:
    """Worker pool with per-field de-duplication"""

    async def test_processes_all_fields(self):
        orchestrator = RecordingOrchestrator(delay=0.01)
        queue = PredictionQueue(JobRunner(orchestrator, timeout=1, tries=1), workers=2)
        queue.start()

        assert queue.enqueue_many([1, 2, 3]) == 3
        await queue.join()
        await queue.stop()

        assert sorted(field_id for field_id, _ in orchestrator.processed) == [1, 2, 3]
        assert not queue.running

    async def test_duplicate_enqueue_ignored(self):
        orchestrator = RecordingOrchestrator(delay=0.05)
        queue = PredictionQueue(JobRunner(orchestrator, timeout=1, tries=1), workers=2)
        queue.start()

        assert queue.enqueue(5) is True
        assert queue.enqueue(5) is False
        await queue.join()
        assert queue.enqueue(5) is True
        await queue.stop()

        assert orchestrator.processed == [(5, {}), (5, {})]

    async def test_not_accepting_before_start_or_after_stop(self):
        queue = PredictionQueue(JobRunner(RecordingOrchestrator(), timeout=1, tries=1), workers=1)
        assert queue.enqueue(1) is False
        queue.start()
        await queue.stop()
        assert queue.enqueue(1) is False


class TestSweepScheduler:
    """Timer-driven processing of unresolved fields"""

    async def test_sweep_runs_fields_in_process(self, database, retry_policy, weather, offline_ai, make_submission):
        orchestrator = PredictionOrchestrator(database, offline_ai, weather, retry_policy)
        sweeper = SweepScheduler(database, JobRunner(orchestrator), interval=0, jitter=0)
        data = make_submission(field_payload(name="A"), field_payload(name="B", crop="Rice"))

        report = await sweeper.sweep_once()

        assert report.found == 2
        assert report.completed == 2
        assert report.submissions_rolled_up == [data["submission_id"]]
        assert database.get_submission(data["submission_id"])["status"] == "completed"

        second = await sweeper.sweep_once()
        assert second.found == 0

    async def test_sweep_feeds_queue(self, database, retry_policy, weather, offline_ai, make_submission):
        orchestrator = PredictionOrchestrator(database, offline_ai, weather, retry_policy)
        runner = JobRunner(orchestrator)
        queue = PredictionQueue(runner, workers=2)
        sweeper = SweepScheduler(database, runner, queue=queue, interval=0, jitter=0)
        data = make_submission(field_payload(name="A"), field_payload(name="B"))

        queue.start()
        report = await sweeper.sweep_once()
        await queue.join()
        await queue.stop()

        assert report.dispatched == 2
        statuses = database.prediction_statuses(data["submission_id"])
        assert statuses == ["completed", "completed"]

    async def test_stale_processing_recovered(self, database, retry_policy, weather, offline_ai, make_submission):
        orchestrator = PredictionOrchestrator(database, offline_ai, weather, retry_policy, stale_after=0)
        sweeper = SweepScheduler(database, JobRunner(orchestrator), interval=0, jitter=0, stale_after=0)
        data = make_submission(field_payload())
        field_id = database.get_fields(data["submission_id"])[0]["id"]
        database.claim_field(field_id, {"abandoned": True})

        report = await sweeper.sweep_once()

        assert report.completed == 1
        prediction = database.get_prediction(field_id)
        assert prediction["processing_status"] == "completed"
        assert "abandoned" not in prediction["ai_metadata"]

    async def test_run_forever_stops(self, database, retry_policy, offline_ai):
        orchestrator = PredictionOrchestrator(database, offline_ai, None, retry_policy)
        sweeper = SweepScheduler(database, JobRunner(orchestrator), interval=0.01, jitter=0.01)

        sweeper.start()
        await asyncio.sleep(0.05)
        sweeper.stop()
        await asyncio.wait_for(sweeper.wait_stopped(), timeout=1)

    def test_next_delay_jitter(self, database, retry_policy, offline_ai):
        orchestrator = PredictionOrchestrator(database, offline_ai, None, retry_policy)
        sweeper = SweepScheduler(database, JobRunner(orchestrator), interval=5, jitter=1)
        for _ in range(20):
            assert 5 <= sweeper.next_delay() <= 6
