"""
Per-field prediction driver.

A field moves NO_RESULT -> PROCESSING -> COMPLETED | FAILED. The AI provider
is tried under a RetryPolicy; when every attempt fails the fallback generator
supplies the whole result, so provider trouble always ends in COMPLETED.
FAILED is reserved for storage errors and for jobs that exhaust their
timeout/try budget (see scheduler.JobRunner).
"""
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from .config import settings
from .database import Database, utcnow
from .errors import PersistenceError, ProviderError
from .fallback import generate_fallback_prediction
from .logging_config import get_logger, log_context
from .models import PredictionPayload, WeatherSnapshot
from .openai_client import MODEL_VERSION, OpenAIPredictionClient, PredictionContext
from .retry import RetryPolicy
from .weather import WeatherClient

logger = get_logger(__name__)


@dataclass
class FieldOutcome:
    field_id: int
    submission_id: int
    status: str  # completed | failed
    source: Optional[str] = None  # openai | fallback
    error: Optional[str] = None


def decide_submission_status(statuses: Sequence[Optional[str]]) -> str:
    """
    Aggregate per-field prediction statuses into a submission status

    statuses holds one entry per field; None means no result row yet.
    """
    if statuses and all(status == 'completed' for status in statuses):
        return 'completed'
    if any(status == 'failed' for status in statuses):
        return 'failed'
    return 'processing'


def rollup_submission(database: Database, submission_id: int) -> str:
    """
    Recompute and store a submission's status from its fields

    Safe to call any number of times; forward-only status moves are enforced
    by the store.
    """
    target = decide_submission_status(database.prediction_statuses(submission_id))
    if target in ('completed', 'failed'):
        changed_from = database.get_submission(submission_id)
        if database.set_submission_status(submission_id, target) and changed_from \
                and changed_from['status'] != target:
            logger.info(
                f"Submission marked {target}",
                extra=log_context(submission_id=submission_id, status=target)
            )
    submission = database.get_submission(submission_id)
    return submission['status'] if submission else target


def field_snapshot(field: dict) -> dict:
    """Static field attributes recorded in ai_metadata when processing starts"""
    return {
        'name': field.get('name'),
        'crop': field.get('crop'),
        'variety': field.get('variety'),
        'area_hectares': field.get('area_hectares'),
        'center_lat': field.get('center_lat'),
        'center_lng': field.get('center_lng'),
        'region': field.get('region'),
    }


class PredictionOrchestrator:
    """Drives one field at a time through its prediction state machine"""

    def __init__(self, database: Database, ai_client: OpenAIPredictionClient,
                 weather_client: Optional[WeatherClient] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 fallback: Callable[[Optional[str]], PredictionPayload] = generate_fallback_prediction,
                 stale_after: Optional[float] = None):
        self.db = database
        self.ai_client = ai_client
        self.weather_client = weather_client
        self.retry_policy = retry_policy or RetryPolicy.from_settings(retry_on=(ProviderError,))
        self.fallback = fallback
        self.stale_after = stale_after if stale_after is not None else settings.STALE_PROCESSING_AFTER

    async def process_field(self, field_id: int, claim: Optional[dict] = None) -> Optional[FieldOutcome]:
        """
        Run one prediction attempt for a field

        Args:
            field_id: field to process
            claim: dict shared across one job's tries. The claimed row's
                processing_started_at is stored under 'started_at', and a
                later try may take over that row (and only that row) even
                though it is still processing

        Returns:
            FieldOutcome, or None when the field is unknown, already resolved
            or owned by another attempt
        """
        field = self.db.get_field(field_id)
        if field is None:
            logger.warning("Field not found, skipping", extra=log_context(field_id=field_id))
            return None

        submission_id = field['submission_id']
        submission = self.db.get_submission(submission_id)
        ctx = log_context(submission_id=submission_id, field_id=field_id)

        metadata = {
            'model_version': MODEL_VERSION,
            'processing_started': utcnow().isoformat(),
            'field_data': field_snapshot(field),
        }
        owned = claim.get('started_at') if claim is not None else None
        prediction = self.db.claim_field(field_id, metadata, stale_after=self.stale_after, owned_started_at=owned)
        if prediction is None:
            logger.debug("Field already resolved or in progress, skipping", extra=ctx)
            return None
        if claim is not None:
            claim['started_at'] = prediction['processing_started_at']

        logger.info(
            "Starting AI prediction processing",
            extra=log_context(submission_id=submission_id, field_id=field_id,
                              field_name=field.get('name'), prediction_id=prediction['id'])
        )

        weather = await self._fetch_weather(field, submission_id)
        context = PredictionContext(field=field, submission=submission or {}, weather=weather)
        payload, metadata_update = await self._predict(context, submission_id)

        metadata.update(metadata_update)
        metadata['processing_completed'] = utcnow().isoformat()
        metadata['weather_data'] = weather.model_dump(exclude={'raw'}) if weather else None
        bottom_line = payload.bottom_line()
        if bottom_line:
            metadata['bottom_line'] = bottom_line

        try:
            written = self.db.complete_prediction(prediction['id'], payload.result_columns(), metadata)
        except PersistenceError as e:
            logger.error(
                "AI prediction processing failed",
                extra=log_context(submission_id=submission_id, field_id=field_id, error=str(e)),
                exc_info=True
            )
            self._mark_failed(prediction['id'], str(e), submission_id, field_id)
            rollup_submission(self.db, submission_id)
            return FieldOutcome(field_id, submission_id, 'failed', metadata_update['source'], str(e))

        if not written:
            # Another attempt took the row over while this one was running
            logger.warning("Prediction row no longer processing, result discarded", extra=ctx)
            return None

        logger.info(
            "AI prediction processing completed successfully",
            extra=log_context(submission_id=submission_id, field_id=field_id,
                              prediction_result_id=prediction['id'],
                              predicted_yield=payload.predicted_yield,
                              source=metadata_update['source'])
        )
        rollup_submission(self.db, submission_id)
        return FieldOutcome(field_id, submission_id, 'completed', metadata_update['source'])

    async def _fetch_weather(self, field: dict, submission_id: int) -> Optional[WeatherSnapshot]:
        if self.weather_client is None:
            return None
        try:
            return await self.weather_client.get_current(field['center_lat'], field['center_lng'])
        except ProviderError as e:
            logger.warning(
                "Weather lookup failed, continuing without weather context",
                extra=log_context(submission_id=submission_id, field_id=field['id'], error=str(e))
            )
            return None

    async def _predict(self, context: PredictionContext, submission_id: int):
        """AI attempts under the retry policy, then the fallback generator"""
        field_id = context.field['id']
        max_attempts = self.retry_policy.max_attempts

        def on_failure(attempt: int, error: BaseException):
            logger.warning(
                "AI prediction attempt failed",
                extra=log_context(submission_id=submission_id, field_id=field_id,
                                  retry_count=attempt, max_retries=max_attempts, error=str(error))
            )

        try:
            result = await self.retry_policy.run(lambda: self.ai_client.predict(context), on_failure)
        except ProviderError as e:
            logger.error(
                "AI prediction failed after all retries, falling back to mock data",
                extra=log_context(submission_id=submission_id, field_id=field_id, final_error=str(e))
            )
            payload = self.fallback(context.field.get('crop'))
            return payload, {
                'ai_service_used': False,
                'source': 'fallback',
                'provider_error': str(e),
                'ai_response': None,
            }

        logger.info("AI prediction successful", extra=log_context(submission_id=submission_id, field_id=field_id))
        return result.payload, {
            'ai_service_used': True,
            'source': 'openai',
            'ai_response': result.raw_response,
        }

    def _mark_failed(self, prediction_id: int, error: str, submission_id: int, field_id: int):
        try:
            self.db.fail_prediction(prediction_id, error)
        except PersistenceError:
            # Row stays processing; a later sweep re-claims it once stale
            logger.error(
                "Could not record prediction failure",
                extra=log_context(submission_id=submission_id, field_id=field_id),
                exc_info=True
            )

    def fail_field(self, field_id: int, error: str, started_at: Optional[str] = None) -> Optional[FieldOutcome]:
        """
        Mark a field's in-flight prediction failed and roll its submission up

        With started_at, only the claim that started at that time is failed.
        """
        prediction = self.db.get_prediction(field_id)
        if prediction is None or prediction['processing_status'] != 'processing':
            return None
        if started_at is not None and prediction['processing_started_at'] != started_at:
            return None
        submission_id = prediction['submission_id']
        logger.error(
            "AI prediction processing failed",
            extra=log_context(submission_id=submission_id, field_id=field_id, error=error)
        )
        self._mark_failed(prediction['id'], error, submission_id, field_id)
        rollup_submission(self.db, submission_id)
        return FieldOutcome(field_id, submission_id, 'failed', error=error)
