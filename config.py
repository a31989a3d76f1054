import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

AUTH_TRANSPORTS = ("cookie", "bearer", "both")
SETTLEMENT_MODES = ("transaction", "compensate")


def _flag(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class Settings:
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "MedEasyDB"
    token_secret: str = "dev-secret"
    token_ttl_days: int = 365
    auth_transport: str = "both"
    app_env: str = "development"
    cors_origins: List[str] = field(default_factory=lambda: ["http://localhost:5173", "http://localhost:5174"])
    stripe_secret_key: str = ""
    payment_currency: str = "usd"
    settlement_mode: str = "transaction"
    expose_upstream_errors: bool = True
    log_level: str = "INFO"
    port: int = 4000

    def __post_init__(self):
        if self.auth_transport not in AUTH_TRANSPORTS:
            raise ValueError(f"AUTH_TRANSPORT must be one of {AUTH_TRANSPORTS}, got {self.auth_transport!r}")
        if self.settlement_mode not in SETTLEMENT_MODES:
            raise ValueError(f"SETTLEMENT_MODE must be one of {SETTLEMENT_MODES}, got {self.settlement_mode!r}")
        if self.is_production and (not self.token_secret or self.token_secret == "dev-secret"):
            raise ValueError("ACCESS_TOKEN_SECRET must be set in production")

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @classmethod
    def from_env(cls) -> "Settings":
        load_dotenv()
        origins = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:5174")
        return cls(
            database_url=os.getenv("DATABASE_URL") or os.getenv("MONGODB_URI") or "mongodb://localhost:27017",
            database_name=os.getenv("DATABASE_NAME", "MedEasyDB"),
            token_secret=os.getenv("ACCESS_TOKEN_SECRET", "dev-secret"),
            token_ttl_days=int(os.getenv("TOKEN_TTL_DAYS", 365)),
            auth_transport=os.getenv("AUTH_TRANSPORT", "both").lower(),
            app_env=os.getenv("APP_ENV", "development").lower(),
            cors_origins=[o.strip() for o in origins.split(",") if o.strip()],
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY", ""),
            payment_currency=os.getenv("PAYMENT_CURRENCY", "usd"),
            settlement_mode=os.getenv("SETTLEMENT_MODE", "transaction").lower(),
            expose_upstream_errors=_flag(os.getenv("EXPOSE_UPSTREAM_ERRORS", "true")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            port=int(os.getenv("PORT", 4000)),
        )
