import os
from dotenv import load_dotenv

load_dotenv()

class Settings:
    # Storage
    DATABASE_PATH = os.getenv("DATABASE_PATH", "agrisense.db")

    # OpenAI Configuration
    OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
    OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
    OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4.1")
    OPENAI_MAX_TOKENS = int(os.getenv("OPENAI_MAX_TOKENS", "4000"))
    OPENAI_TEMPERATURE = float(os.getenv("OPENAI_TEMPERATURE", "0.7"))
    OPENAI_TIMEOUT = float(os.getenv("OPENAI_TIMEOUT", "60"))  # seconds

    # Weather provider (Open-Meteo, no key required)
    WEATHER_API_URL = os.getenv("WEATHER_API_URL", "https://api.open-meteo.com/v1/forecast")
    WEATHER_TIMEOUT = float(os.getenv("WEATHER_TIMEOUT", "10"))

    # Prediction retry policy (attempts against the AI provider before fallback)
    PREDICTION_MAX_RETRIES = int(os.getenv("PREDICTION_MAX_RETRIES", "2"))
    PREDICTION_RETRY_DELAY = float(os.getenv("PREDICTION_RETRY_DELAY", "2"))
    PREDICTION_RETRY_BACKOFF = float(os.getenv("PREDICTION_RETRY_BACKOFF", "1.0"))

    # Per-field job limits
    PREDICTION_JOB_TIMEOUT = float(os.getenv("PREDICTION_JOB_TIMEOUT", "300"))  # 5 minutes
    PREDICTION_JOB_TRIES = int(os.getenv("PREDICTION_JOB_TRIES", "3"))
    PREDICTION_WORKERS = int(os.getenv("PREDICTION_WORKERS", "2"))

    # Scheduler
    DISPATCH_MODE = os.getenv("DISPATCH_MODE", "queue")  # queue or sweep
    SWEEP_INTERVAL = float(os.getenv("SWEEP_INTERVAL", "5"))
    SWEEP_JITTER = float(os.getenv("SWEEP_JITTER", "1"))
    STALE_PROCESSING_AFTER = float(os.getenv("STALE_PROCESSING_AFTER", "600"))

    # Submissions
    DEFAULT_ZONE = os.getenv("DEFAULT_ZONE", "Northern Ghana (Savannah Zone)")
    MAX_FIELDS_PER_SUBMISSION = 20
    MAX_COORDINATES_PER_FIELD = 100
    MAX_IMAGE_BYTES = 2 * 1024 * 1024

    # AWS S3 Configuration (field images, optional)
    AWS_BUCKET_NAME = os.getenv("AWS_BUCKET_NAME", "")
    AWS_REGION = os.getenv("AWS_REGION", "us-east-1")

    # Logging
    LOG_DIR = os.getenv("LOG_DIR", "logs")
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

    @property
    def openai_enabled(self):
        return bool(self.OPENAI_API_KEY)

    @property
    def image_upload_enabled(self):
        return bool(self.AWS_BUCKET_NAME)


settings = Settings()
