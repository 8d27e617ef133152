import os

try:
    from dotenv import load_dotenv
    load_dotenv()
except ImportError:
    pass  # dotenv is optional for production, but useful locally

class Settings:
    # --- Runtime ---
    APP_ENV = os.environ.get("APP_ENV", "development")
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # --- Database ---
    DATABASE_URL = os.environ.get("DATABASE_URL")
    DATABASE_PUBLIC_URL = os.environ.get("DATABASE_PUBLIC_URL")

    # --- Redis ---
    REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

    # --- OpenAI / reply drafting ---
    OPENAI_API_KEY = os.environ.get("OPENAI_API_KEY")
    OPENAI_MODEL = os.environ.get("OPENAI_MODEL", "gpt-4.1")
    OPENAI_TIMEOUT = int(os.environ.get("OPENAI_TIMEOUT", "30"))

    # --- Telnyx (SMS) ---
    TELNYX_API_KEY = os.environ.get("TELNYX_API_KEY")
    TELNYX_PUBLIC_KEY = os.environ.get("TELNYX_PUBLIC_KEY")
    TELNYX_FROM_NUMBER = os.environ.get("TELNYX_FROM_NUMBER", "")

    # --- Stripe (billing) ---
    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    BILLING_RETURN_URL = os.environ.get("BILLING_RETURN_URL", "https://example.com/account")
    SIGNUP_URL = os.environ.get("SIGNUP_URL", "https://example.com/pricing")

    # --- Google (review platform + places) ---
    GOOGLE_PLACES_API_KEY = os.environ.get("GOOGLE_PLACES_API_KEY")
    HTTP_TIMEOUT = int(os.environ.get("HTTP_TIMEOUT", "15"))

    # --- Job triggers ---
    JOBS_TOKEN = os.environ.get("JOBS_TOKEN")
    SUPPORT_EMAIL = os.environ.get("SUPPORT_EMAIL", "support@example.com")

    # --- Sweep cadence and limits ---
    POLL_INTERVAL_SECONDS = int(os.environ.get("POLL_INTERVAL_SECONDS", "300"))
    RESPONSE_POST_INTERVAL_SECONDS = int(os.environ.get("RESPONSE_POST_INTERVAL_SECONDS", "120"))
    SMS_RETRY_INTERVAL_SECONDS = int(os.environ.get("SMS_RETRY_INTERVAL_SECONDS", "60"))
    SMS_RETRY_MAX_ATTEMPTS = int(os.environ.get("SMS_RETRY_MAX_ATTEMPTS", "3"))
    SMS_RETRY_BASE_DELAY_SECONDS = int(os.environ.get("SMS_RETRY_BASE_DELAY_SECONDS", "60"))
    SMS_RETRY_BATCH_SIZE = int(os.environ.get("SMS_RETRY_BATCH_SIZE", "50"))
    RESPONSE_POST_BATCH_SIZE = int(os.environ.get("RESPONSE_POST_BATCH_SIZE", "10"))

    @property
    def is_production(self) -> bool:
        return self.APP_ENV.lower() in ("production", "prod")

settings = Settings()
