"""
Centralized engine configuration implementing the 12-Factor App methodology.
Every tunable of the pricing pipeline is read from the environment (or a .env file).
"""
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Immutable configuration schema backed by environment variables."""

    APP_NAME: str = "Tarifador"
    VERSION: str = "1.0.0"
    DEBUG: bool = False

    # Catalog storage used by the SQLAlchemy repository (clients, sites, routes, methods, rules)
    DATABASE_URL: str = "sqlite:///./tarifador.db"

    LOG_LEVEL: str = "INFO"

    # Result cache: entries expire this many seconds after being written
    CACHE_TTL_SECONDS: int = Field(default=300, ge=1)

    # Audit ring buffer size; oldest records are evicted first
    AUDIT_CAPACITY: int = Field(default=1000, ge=1)
    SLOW_CALCULATION_MS: int = Field(default=1000, ge=1)

    # Bounds on formula evaluation cost
    MAX_FORMULA_LENGTH: int = Field(default=2000, ge=16)
    MAX_NESTING_DEPTH: int = Field(default=40, ge=4)

    DEFAULT_METHOD_CODE: str = "PALET"

    # Thread pool size for the concurrent catalog lookups of the context builder
    CONTEXT_LOOKUP_WORKERS: int = Field(default=6, ge=1)

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, frozen=True)


settings = Settings()
