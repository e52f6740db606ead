import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request, Query
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .config import settings
from .database import Database, db
from .errors import NotFoundError, PersistenceError, ProviderError, ValidationError
from .logging_config import setup_logging, get_logger, log_context
from .openai_client import OpenAIPredictionClient, openai_client
from .orchestrator import PredictionOrchestrator
from .retry import RetryPolicy
from .scheduler import JobRunner, PredictionQueue, SweepScheduler
from .submissions import (
    create_submission,
    get_latest_predictions,
    get_prediction_status,
    get_submission_prediction,
    parse_submission,
)
from .weather import WeatherClient, weather_client

DISPATCH_MODES = ('queue', 'sweep', 'manual')

# Initialize logging
setup_logging()
logger = get_logger(__name__)


class PredictionServices:
    """
    Prediction pipeline wired around one database

    dispatch_mode:
        queue  - fields are queued on submit; a background sweep feeds the same
                 queue with anything left behind (stale or never dispatched)
        sweep  - only the background sweep processes fields
        manual - nothing runs in the background (scripts/process_predictions.py)
    """

    def __init__(self, database: Database, ai_client: OpenAIPredictionClient,
                 weather: Optional[WeatherClient] = None, retry_policy: Optional[RetryPolicy] = None,
                 dispatch_mode: str = None):
        dispatch_mode = dispatch_mode or settings.DISPATCH_MODE
        if dispatch_mode not in DISPATCH_MODES:
            raise ValueError(f"Unknown dispatch mode: {dispatch_mode}")

        self.db = database
        self.weather = weather
        self.dispatch_mode = dispatch_mode
        self.orchestrator = PredictionOrchestrator(database, ai_client, weather, retry_policy=retry_policy)
        self.runner = JobRunner(self.orchestrator)
        self.queue = PredictionQueue(self.runner) if dispatch_mode == 'queue' else None
        self.sweeper = SweepScheduler(database, self.runner, queue=self.queue) \
            if dispatch_mode != 'manual' else None

    async def start(self):
        if self.queue is not None:
            self.queue.start()
        if self.sweeper is not None:
            self.sweeper.start()
        logger.info("Prediction services started", extra=log_context(dispatch_mode=self.dispatch_mode))

    async def stop(self):
        if self.sweeper is not None:
            self.sweeper.stop()
            await self.sweeper.wait_stopped()
        if self.queue is not None:
            await self.queue.stop(drain_timeout=settings.PREDICTION_JOB_TIMEOUT)
        logger.info("Prediction services stopped")

    def dispatch_submission(self, submission_id: int) -> int:
        """Queue every field of a new submission; returns how many were queued"""
        if self.queue is None:
            return 0
        return self.queue.enqueue_many(field['id'] for field in self.db.get_fields(submission_id))


def create_app(database: Database = None, ai_client: OpenAIPredictionClient = None,
               weather: WeatherClient = None, retry_policy: RetryPolicy = None,
               dispatch_mode: str = None) -> FastAPI:
    services = PredictionServices(
        database or db,
        ai_client or openai_client,
        weather or weather_client,
        retry_policy=retry_policy,
        dispatch_mode=dispatch_mode,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await services.start()
        try:
            yield
        finally:
            await services.stop()

    app = FastAPI(title="AgriSense Field Prediction API", lifespan=lifespan)
    app.state.services = services

    # Middleware to add request ID
    @app.middleware("http")
    async def add_request_id(request: Request, call_next):
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id

        logger.info(
            f"Request started: {request.method} {request.url.path}",
            extra={"extra": {"request_id": request_id}}
        )

        try:
            response = await call_next(request)
            logger.info(
                f"Request completed: {request.method} {request.url.path} - {response.status_code}",
                extra={"extra": {"request_id": request_id}}
            )
            response.headers["X-Request-ID"] = request_id
            return response
        except Exception as e:
            logger.error(
                f"Request failed: {str(e)}",
                extra={"extra": {"request_id": request_id}},
                exc_info=True
            )
            raise

    # ============================================
    # ERROR HANDLERS
    # ============================================

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError):
        return JSONResponse(
            status_code=422,
            content={"success": False, "message": exc.message, "errors": exc.errors}
        )

    @app.exception_handler(RequestValidationError)
    async def request_validation_error_handler(request: Request, exc: RequestValidationError):
        errors = {}
        for error in exc.errors():
            path = '.'.join(str(part) for part in error['loc'])
            errors.setdefault(path, []).append(error['msg'])
        return JSONResponse(
            status_code=422,
            content={"success": False, "message": "Validation failed", "errors": errors}
        )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(request: Request, exc: NotFoundError):
        return JSONResponse(status_code=404, content={"success": False, "message": str(exc)})

    @app.exception_handler(PersistenceError)
    async def persistence_error_handler(request: Request, exc: PersistenceError):
        logger.error(
            "Storage error while handling request",
            extra=log_context(request_id=getattr(request.state, "request_id", None), error=str(exc))
        )
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": "Storage error", "error": str(exc)}
        )

    # ============================================
    # FIELD SUBMISSION
    # ============================================

    @app.post("/fields")
    async def submit_fields(request: Request):
        """
        Save a batch of drawn fields and start AI predictions for each

        Body:
            fields: 1-20 fields, each with name, coordinates ([[lat, lng], ...], at
                least 3 vertices), center, region, country and optional crop,
                variety and image
            user_location: optional {lat, lng, accuracy}
            region, zone: optional submitter region and agro-climatic zone

        Returns:
            submission id and key used to poll /api/predictions/status/{key}
        """
        try:
            raw = await request.json()
        except ValueError:
            raise ValidationError({"body": ["Request body must be valid JSON"]})

        submission = parse_submission(raw)

        try:
            data = create_submission(services.db, submission, {
                "user_agent": request.headers.get("user-agent"),
                "ip_address": request.client.host if request.client else None,
                "submission_method": "field_mapping_interface",
            })
        except Exception as e:
            logger.error(
                "Field submission failed",
                extra=log_context(request_id=request.state.request_id, error=str(e)),
                exc_info=True
            )
            return JSONResponse(
                status_code=500,
                content={"success": False, "message": "Failed to save fields", "error": str(e)}
            )

        queued = services.dispatch_submission(data["submission_id"])
        logger.info(
            "AI prediction jobs dispatched",
            extra=log_context(submission_id=data["submission_id"], queued=queued,
                              field_count=data["total_fields"])
        )

        return {
            "success": True,
            "message": "Fields saved successfully",
            "data": data,
            "redirect_to": "/prediction",
        }

    # ============================================
    # PREDICTION ENDPOINTS
    # ============================================

    @app.get("/api/predictions")
    async def latest_predictions():
        """Completed field predictions from the 10 most recent submissions"""
        predictions = get_latest_predictions(services.db, limit=10)
        return {"success": True, "data": predictions, "count": len(predictions)}

    @app.get("/api/predictions/status/{submission_key}")
    async def prediction_status(submission_key: str):
        """
        Per-field processing status for a submission, polled by the client

        Returns:
            submission aggregate (all_completed, any_failed) and one entry per field
        """
        return get_prediction_status(services.db, submission_key)

    @app.get("/api/predictions/{submission_key}")
    async def submission_prediction(submission_key: str):
        """First completed prediction of a submission, or a still-processing indicator"""
        return get_submission_prediction(services.db, submission_key)

    # ============================================
    # WEATHER
    # ============================================

    @app.get("/current-weather")
    async def current_weather(
        latitude: Optional[str] = Query(None),
        longitude: Optional[str] = Query(None)
    ):
        """
        Current weather at a point

        Query params:
            latitude: -90..90
            longitude: -180..180
        """
        try:
            lat = float(latitude)
            lng = float(longitude)
        except (TypeError, ValueError):
            return JSONResponse(
                status_code=400,
                content={"success": False, "message": "Valid latitude and longitude are required"}
            )
        if not -90 <= lat <= 90 or not -180 <= lng <= 180:
            return JSONResponse(
                status_code=400,
                content={"success": False, "message": "Latitude or longitude out of range"}
            )

        try:
            data = await services.weather.fetch_raw(lat, lng)
        except ProviderError as e:
            logger.warning("Weather lookup failed", extra=log_context(latitude=lat, longitude=lng, error=str(e)))
            return JSONResponse(
                status_code=e.status_code or 502,
                content={"success": False, "message": "Failed to fetch weather data", "error": str(e)}
            )

        return {"success": True, "message": "Weather data retrieved successfully", "data": data}

    # ============================================
    # HEALTH & MONITORING ENDPOINTS
    # ============================================

    @app.get("/health")
    async def health_check():
        """Health check endpoint for monitoring"""
        return {
            "status": "healthy",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "dispatch_mode": services.dispatch_mode,
            "ai_configured": settings.openai_enabled,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
