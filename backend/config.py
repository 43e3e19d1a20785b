from pydantic_settings import BaseSettings
from pathlib import Path


class Settings(BaseSettings):
    ENVIRONMENT: str = "development"  # development | test | staging | production
    APP_NAME: str = "Health Tracker"
    LOG_LEVEL: str = "INFO"
    DATABASE_URL: str = "sqlite:///data/healthtracker.db"
    DATA_DIR: Path = Path("data")
    UPLOAD_DIR: Path = Path("data/uploads")
    MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024
    CORS_ORIGINS: list[str] = [
        "http://localhost:3000",
        "http://localhost:5000",
    ]

    # Identity provider: signs the short-lived identity token exchanged at login.
    IDENTITY_TOKEN_SECRET: str = "change-me-in-production-identity-signing-key"
    IDENTITY_TOKEN_ALGORITHM: str = "HS256"
    IDENTITY_TOKEN_AUDIENCE: str | None = None

    SESSION_MAX_AGE_SECONDS: int = 7 * 24 * 3600
    AUTH_COOKIE_NAME: str = "healthtracker_session"
    AUTH_COOKIE_SECURE: bool = False
    AUTH_COOKIE_HTTPONLY: bool = True
    AUTH_COOKIE_SAMESITE: str = "lax"  # strict | lax | none
    AUTH_COOKIE_DOMAIN: str | None = None
    AUTH_COOKIE_PATH: str = "/"
    SECURITY_HEADERS_ENABLED: bool = True
    SECURITY_CSP: str = (
        "default-src 'self'; "
        "img-src 'self' data: blob:; "
        "style-src 'self' 'unsafe-inline'; "
        "script-src 'self'; "
        "connect-src 'self' https:; "
        "font-src 'self' data:; "
        "frame-ancestors 'none'; "
        "base-uri 'self'; "
        "form-action 'self';"
    )
    RATE_LIMIT_AUTH_LOGIN_ATTEMPTS: int = 10
    RATE_LIMIT_AUTH_LOGIN_WINDOW_SECONDS: int = 300

    OPENAI_API_KEY: str | None = None
    OPENAI_MODEL: str = "gpt-4o"
    AI_REQUEST_TIMEOUT_SECONDS: int = 120

    S3_BUCKET: str | None = None
    AWS_REGION: str = "us-east-1"

    STRIPE_SECRET_KEY: str | None = None
    STRIPE_BASIC_MONTHLY_PRICE_ID: str | None = None
    STRIPE_BASIC_YEARLY_PRICE_ID: str | None = None
    STRIPE_PRO_MONTHLY_PRICE_ID: str | None = None
    STRIPE_PRO_YEARLY_PRICE_ID: str | None = None
    STRIPE_PREMIUM_MONTHLY_PRICE_ID: str | None = None
    STRIPE_PREMIUM_YEARLY_PRICE_ID: str | None = None

    SCHEDULER_ENABLED: bool = False
    SCHEDULER_TICK_SECONDS: int = 60
    APPLE_HEALTH_SYNC_INTERVAL_MINUTES: int = 1440
    SESSION_PURGE_INTERVAL_MINUTES: int = 60

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    @property
    def is_production_like(self) -> bool:
        return (self.ENVIRONMENT or "").strip().lower() in {"production", "prod", "staging"}

    def validate_security_configuration(self) -> None:
        if not self.is_production_like:
            return

        errors: list[str] = []
        if self.IDENTITY_TOKEN_SECRET == "change-me-in-production-identity-signing-key":
            errors.append("IDENTITY_TOKEN_SECRET must be changed from the default value")
        if len((self.IDENTITY_TOKEN_SECRET or "").strip()) < 32:
            errors.append("IDENTITY_TOKEN_SECRET must be at least 32 characters")
        if not self.AUTH_COOKIE_SECURE:
            errors.append("AUTH_COOKIE_SECURE must be true in production-like environments")
        if (self.AUTH_COOKIE_SAMESITE or "").strip().lower() == "none" and not self.AUTH_COOKIE_SECURE:
            errors.append("AUTH_COOKIE_SAMESITE=none requires AUTH_COOKIE_SECURE=true")
        if "*" in self.CORS_ORIGINS:
            errors.append("CORS_ORIGINS must not contain a wildcard in production-like environments")
        if errors:
            joined = "; ".join(errors)
            raise RuntimeError(f"Insecure production configuration: {joined}")

    def stripe_price_id(self, tier: str, interval: str) -> str | None:
        key = f"STRIPE_{tier.upper()}_{'YEARLY' if interval == 'yearly' else 'MONTHLY'}_PRICE_ID"
        return getattr(self, key, None)


settings = Settings()
settings.DATA_DIR.mkdir(parents=True, exist_ok=True)
settings.UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
