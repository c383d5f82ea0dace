"""
Application configuration with environment variables.
"""
from pydantic_settings import BaseSettings
from pydantic import ConfigDict, Field, field_validator
from typing import Optional, List


class Settings(BaseSettings):
    model_config = ConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "Procura OS"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    SECRET_KEY: str = "your-secret-key-change-in-production"

    # Database
    POSTGRES_USER: str = "procura"
    POSTGRES_PASSWORD: str = "procura"
    POSTGRES_HOST: str = "postgres"
    POSTGRES_PORT: str = "5432"
    POSTGRES_DB: str = "procura"
    DATABASE_URL: Optional[str] = Field(default=None, validate_default=True)
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    # Redis
    REDIS_URL: str = "redis://redis:6379/0"

    # JWT Settings (tokens are issued by the identity service; we only verify)
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # CORS
    CORS_ORIGINS: List[str] = ["http://localhost:5173", "http://localhost:3000"]

    # Demo seeding - MUST be false in production
    SEED_DEMO: bool = False

    # =========================================
    # Sourcing workflow
    # =========================================

    # Profile used when a request does not name one (logistics, professional_services)
    DEFAULT_DOMAIN_PROFILE: str = "logistics"

    # When false, RFQs may be published from SUBMITTED / UNDER_REVIEW requests.
    # Tenants can also opt in per organization via settings.allow_publish_from_submitted
    RFQ_PUBLISH_REQUIRES_APPROVAL: bool = True

    # Eager expiry sweep cadence (the read path expires lazily regardless)
    EXPIRY_SWEEP_INTERVAL_SECONDS: int = 300

    # =========================================
    # External reasoning service (advisory only)
    # =========================================

    REASONING_PROVIDER: str = "mock"  # mock, openai, none
    REASONING_API_URL: str = "https://api.openai.com/v1/chat/completions"
    REASONING_API_KEY: Optional[str] = None
    REASONING_MODEL: str = "gpt-4.1-mini"
    REASONING_TIMEOUT_SECONDS: float = 5.0
    REASONING_FAILURE_THRESHOLD: int = 3
    REASONING_RECOVERY_SECONDS: float = 60.0

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

    @field_validator('SEED_DEMO')
    @classmethod
    def validate_seed_demo(cls, v: bool, info) -> bool:
        """Prevent demo seeding in production."""
        if v and not info.data.get("DEBUG", False):
            raise ValueError(
                "SEED_DEMO=true is not allowed when DEBUG=false. "
                "Demo seeding creates predictable tenants and suppliers."
            )
        return v

    @field_validator('POSTGRES_PASSWORD')
    @classmethod
    def validate_postgres_password(cls, v: str, info) -> str:
        """Reject default database password in production."""
        weak = {"procura", "postgres", "password", "changeme", ""}
        if v in weak and not info.data.get("DEBUG", False):
            raise ValueError(
                "POSTGRES_PASSWORD is set to a default value. "
                "Set a strong database password for production."
            )
        return v

    @field_validator('REASONING_PROVIDER')
    @classmethod
    def validate_reasoning_provider(cls, v: str) -> str:
        allowed = {"mock", "openai", "none"}
        if v not in allowed:
            raise ValueError(f"REASONING_PROVIDER must be one of {sorted(allowed)}")
        return v


settings = Settings()
