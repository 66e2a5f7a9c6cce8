"""
Application configuration with environment variables.
"""
from pydantic_settings import BaseSettings
from pydantic import ConfigDict, field_validator
from typing import Optional, List


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "Procura Intelligence"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SECRET_KEY: str = "your-secret-key-change-in-production"

    # Database
    POSTGRES_USER: str = "procura"
    POSTGRES_PASSWORD: str = "procura"
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: str = "5432"
    POSTGRES_DB: str = "procura"
    DATABASE_URL: Optional[str] = None

    # JWT Settings (tokens are issued by the auth service, we only verify them)
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # LLM Provider
    LLM_PROVIDER: str = "mock"  # mock, openai, anthropic
    OPENAI_API_KEY: Optional[str] = None
    ANTHROPIC_API_KEY: Optional[str] = None
    LLM_TEXT_MODEL: Optional[str] = None  # provider default when unset
    LLM_VISION_MODEL: Optional[str] = None
    AI_TIMEOUT_SECONDS: float = 30.0
    AI_MAX_OUTPUT_TOKENS: int = 2048

    # OCR
    TESSERACT_CMD: Optional[str] = None  # falls back to tesseract on PATH
    OCR_LANGUAGE: str = "eng"
    OCR_CONFIDENCE_THRESHOLD: float = 0.70
    MAX_UPLOAD_SIZE: int = 20 * 1024 * 1024  # 20MB

    # Engines
    VENDOR_SCORE_VALIDITY_DAYS: int = 30
    ANOMALY_HISTORY_DAYS: int = 180
    FORECAST_HISTORY_LIMIT: int = 100
    RECOMMENDATION_LIMIT: int = 10

    # Negotiation conversation cache
    NEGOTIATION_CACHE_TTL_SECONDS: int = 30 * 60
    NEGOTIATION_CACHE_MAX_SESSIONS: int = 500

    # Assistant chat sessions (in-process only)
    CHAT_CACHE_TTL_SECONDS: int = 60 * 60
    CHAT_CACHE_MAX_SESSIONS: int = 1000
    CHAT_HISTORY_WINDOW: int = 10

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    @field_validator('DATABASE_URL', mode='before')
    @classmethod
    def assemble_db_url(cls, v: Optional[str], info) -> str:
        if isinstance(v, str) and v:
            return v

        data = info.data
        user = data.get("POSTGRES_USER", "procura")
        password = data.get("POSTGRES_PASSWORD", "procura")
        host = data.get("POSTGRES_HOST", "postgres")
        port = data.get("POSTGRES_PORT", "5432")
        db = data.get("POSTGRES_DB", "procura")

        return f"postgresql://{user}:{password}@{host}:{port}/{db}"

    @field_validator('SECRET_KEY')
    @classmethod
    def validate_secret_key(cls, v: str, info) -> str:
        """Reject weak SECRET_KEY in production, warn in development."""
        weak_keys = {
            "your-secret-key-change-in-production",
            "change-me-in-production",
            "secret",
            "changeme",
        }
        is_weak = v in weak_keys or len(v) < 32
        if is_weak:
            debug = info.data.get("DEBUG", False)
            if not debug:
                raise ValueError(
                    "SECRET_KEY is weak or default. "
                    "Generate a strong key with: openssl rand -hex 32"
                )
            import warnings
            warnings.warn(
                "SECRET_KEY is weak or default! Set a strong key before deploying.",
                UserWarning,
                stacklevel=2,
            )
        return v

    @field_validator('LLM_PROVIDER')
    @classmethod
    def validate_llm_provider(cls, v: str) -> str:
        provider = v.strip().lower()
        if provider not in {"mock", "openai", "anthropic"}:
            raise ValueError(f"Unsupported LLM_PROVIDER '{v}'. Use mock, openai or anthropic.")
        return provider

    @field_validator('OCR_CONFIDENCE_THRESHOLD')
    @classmethod
    def validate_ocr_threshold(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("OCR_CONFIDENCE_THRESHOLD must be between 0 and 1")
        return v


settings = Settings()
