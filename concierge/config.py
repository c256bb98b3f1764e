"""Configuration management for the provider outreach service."""

import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


class Config:
    """Application configuration."""

    # Application Settings
    DEBUG: bool = os.getenv("DEBUG", "False").lower() == "true"
    BASE_URL: str = os.getenv("BASE_URL", "http://localhost:8000")  # Public URL used to build webhook URLs
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./concierge.db")

    # VAPI (direct call-automation backend)
    VAPI_API_KEY: str = os.getenv("VAPI_API_KEY", "")
    VAPI_PHONE_NUMBER_ID: str = os.getenv("VAPI_PHONE_NUMBER_ID", "")
    VAPI_BASE_URL: str = os.getenv("VAPI_BASE_URL", "https://api.vapi.ai")
    # When set, VAPI posts end-of-call reports here and the direct backend
    # waits on the result cache before falling back to REST polling.
    VAPI_WEBHOOK_URL: str = os.getenv("VAPI_WEBHOOK_URL", "")

    # Kestra (workflow orchestrator backend)
    KESTRA_ENABLED: bool = os.getenv("KESTRA_ENABLED", "False").lower() == "true"
    KESTRA_URL: str = os.getenv("KESTRA_URL", "")
    KESTRA_NAMESPACE: str = os.getenv("KESTRA_NAMESPACE", "ai_concierge")
    # Strict mode: an enabled-but-unhealthy orchestrator is an error, not a
    # silent fallback to direct VAPI.
    KESTRA_STRICT_MODE: bool = os.getenv("KESTRA_STRICT_MODE", "False").lower() == "true"
    KESTRA_HEALTH_CHECK_TIMEOUT: float = float(os.getenv("KESTRA_HEALTH_CHECK_TIMEOUT", "3.0"))

    # Google Places (lookup / enrichment service)
    GOOGLE_PLACES_API_KEY: str = os.getenv("GOOGLE_PLACES_API_KEY", "")

    # OpenAI (scoring oracle)
    OPENAI_API_KEY: str = os.getenv("OPENAI_API_KEY", "")
    OPENAI_MODEL: str = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

    # Twilio (SMS notifications)
    TWILIO_ACCOUNT_SID: str = os.getenv("TWILIO_ACCOUNT_SID", "")
    TWILIO_AUTH_TOKEN: str = os.getenv("TWILIO_AUTH_TOKEN", "")
    TWILIO_PHONE_NUMBER: str = os.getenv("TWILIO_PHONE_NUMBER", "")

    # Result cache
    RESULT_CACHE_TTL_SECONDS: int = int(os.getenv("RESULT_CACHE_TTL_SECONDS", str(30 * 60)))
    RESULT_CACHE_SWEEP_SECONDS: int = int(os.getenv("RESULT_CACHE_SWEEP_SECONDS", str(5 * 60)))

    # Finished background batch jobs stay readable this long
    BATCH_JOB_RETENTION_SECONDS: int = int(os.getenv("BATCH_JOB_RETENTION_SECONDS", str(60 * 60)))

    # Call dispatch
    # 36 attempts x 5s = 3 minutes before a call resolves to "timeout".
    CALL_POLL_INTERVAL_SECONDS: float = float(os.getenv("CALL_POLL_INTERVAL_SECONDS", "5"))
    CALL_POLL_MAX_ATTEMPTS: int = int(os.getenv("CALL_POLL_MAX_ATTEMPTS", "36"))
    MAX_CONCURRENT_CALLS: int = int(os.getenv("MAX_CONCURRENT_CALLS", "5"))

    @classmethod
    def has_vapi_config(cls) -> bool:
        """Check if the direct VAPI backend can place calls."""
        return bool(cls.VAPI_API_KEY and cls.VAPI_PHONE_NUMBER_ID)

    @classmethod
    def has_kestra_config(cls) -> bool:
        """Check if an orchestrator endpoint is configured."""
        return bool(cls.KESTRA_URL)

    @classmethod
    def has_places_key(cls) -> bool:
        """Check if Google Places API key is configured."""
        return bool(cls.GOOGLE_PLACES_API_KEY)

    @classmethod
    def has_openai_key(cls) -> bool:
        """Check if OpenAI API key is configured."""
        return bool(cls.OPENAI_API_KEY)

    @classmethod
    def has_twilio_config(cls) -> bool:
        """Check if Twilio configuration is complete."""
        return all([
            cls.TWILIO_ACCOUNT_SID,
            cls.TWILIO_AUTH_TOKEN,
            cls.TWILIO_PHONE_NUMBER
        ])


# Create a global config instance
config = Config()
