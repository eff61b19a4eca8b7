# memoir_voice/config.py
from typing import Optional
from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    # App
    APP_HOST: str = Field("0.0.0.0", description="Host to bind the app")
    APP_PORT: int = Field(8000, description="Port to run the app")
    ENV: str = Field("dev", description="Environment (dev|prod)")
    PUBLIC_BASE_URL: str = Field("http://localhost:8000", description="Externally reachable base URL used in TwiML callbacks")

    # Storage
    DB_URL: str = Field("sqlite:///./data/memoir.db", description="Database URL")
    REDIS_URL: Optional[str] = Field(None, description="Redis URL for call sessions (in-memory fallback if unset)")
    SESSION_TTL_SECONDS: int = Field(3600, description="Lifetime of an idle call session")

    # Media
    MEDIA_DIR: str = Field("./data/media", description="Directory where synthesized audio is written")
    MEDIA_BASE_URL: str = Field("http://localhost:8000/media", description="Base URL for serving generated audio/media")

    # Providers / modes
    LLM_MODE: str = Field("openai", description="llm mode: openai | stub")
    LLM_API_KEY: Optional[str] = Field(None, description="API key for LLM provider")
    LLM_MODEL: str = Field("gpt-4o-mini", description="Chat completion model")
    EMBEDDING_MODEL: str = Field("text-embedding-3-small", description="Embedding model")
    TTS_MODE: str = Field("stub", description="tts mode: stub | local | elevenlabs")
    ELEVENLABS_API_KEY: Optional[str] = Field(None, description="ElevenLabs API key")
    ELEVENLABS_VOICE_ID: str = Field("21m00Tcm4TlvDq8ikWAM", description="ElevenLabs voice id")
    ELEVENLABS_MODEL_ID: str = Field("eleven_monolingual_v1", description="ElevenLabs TTS model id")

    # Telephony
    TWILIO_ACCOUNT_SID: Optional[str] = Field(None, description="Twilio account SID")
    TWILIO_AUTH_TOKEN: Optional[str] = Field(None, description="Twilio auth token")
    TWILIO_PHONE_NUMBER: Optional[str] = Field(None, description="Caller id for outbound calls")
    TWILIO_VALIDATE_SIGNATURE: bool = Field(False, description="Validate X-Twilio-Signature on telephony webhooks")

    # Voice-AI provider webhooks
    VOICE_AI_WEBHOOK_SECRET: Optional[str] = Field(None, description="HMAC secret shared with the voice-AI provider")
    VOICE_AI_VERIFY_SIGNATURE: bool = Field(True, description="Reject voice-AI webhooks without a valid signature")

    # Jobs
    JOB_BACKEND: str = Field("memory", description="job backend: memory | celery")
    CELERY_BROKER_URL: str = Field("redis://localhost:6379/1", description="Celery broker / result backend URL")
    JOB_ATTEMPTS: int = Field(3, description="Total executions per job before it is left failed")
    JOB_BACKOFF_MS: int = Field(5000, description="Base delay for exponential job backoff")

    # Billing
    CALL_COST_PER_MINUTE_CENTS: int = Field(10, description="Call price per started minute")

    # Logging / misc
    LOG_LEVEL: str = Field("info", description="Logging level")

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


# Singleton settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Return a singleton Settings instance (loads from .env automatically).
    Use `get_settings()` instead of importing Settings() directly so other modules
    share the same instance.
    """
    global _settings
    if _settings is None:
        _settings = Settings()  # loads from environment / .env
    return _settings
