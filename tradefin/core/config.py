"""
Application configuration module.

Loads settings from environment variables (or .env file) using pydantic-settings.
All sensitive values (DB credentials, oracle API key) come from environment —
never hardcoded.  Financing constants (funding percentage, APR bounds, risk
tolerance) are tunable per deployment and turned into explicit policy objects
by :mod:`tradefin.core.policy`.
"""

from enum import Enum

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class FallbackMode(str, Enum):
    """What the verification coordinator does when the oracle never answers."""

    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


class Settings(BaseSettings):
    """
    Central configuration for the Tradefin invoice financing service.

    Environment variables are loaded automatically from .env if present.
    In production, these should be injected via the container orchestrator
    (e.g., Kubernetes Secrets, AWS Parameter Store).
    """

    PROJECT_NAME: str = "Tradefin Invoice Financing API"
    API_V1_STR: str = "/api/v1"

    # ── SQLite mode (no external DB required) ──
    USE_SQLITE: bool = False

    # ── PostgreSQL connection parameters ──
    # Empty defaults so USE_SQLITE=true works without dummy PG env vars;
    # the validator below enforces them in PostgreSQL mode.
    POSTGRES_USER: str = ""
    POSTGRES_PASSWORD: str = ""
    POSTGRES_SERVER: str = ""
    POSTGRES_DB: str = ""
    POSTGRES_PORT: int = 5432

    @model_validator(mode="after")
    def _require_pg_credentials_unless_sqlite(self) -> "Settings":
        """Fail fast if PostgreSQL credentials are missing in production mode."""
        if not self.USE_SQLITE:
            missing = [
                name
                for name in (
                    "POSTGRES_USER",
                    "POSTGRES_PASSWORD",
                    "POSTGRES_SERVER",
                    "POSTGRES_DB",
                )
                if not getattr(self, name)
            ]
            if missing:
                vars_list = ", ".join(missing)
                raise ValueError(
                    f"PostgreSQL mode requires these environment variables: "
                    f"{vars_list}.\n\n"
                    f"Either set them (or put them in a .env file), or run "
                    f"with an in-memory SQLite database:\n"
                    f"       USE_SQLITE=true uvicorn tradefin.main:app"
                )
        return self

    @model_validator(mode="after")
    def _check_financing_bounds(self) -> "Settings":
        """Reject policy values that would make the invariants unsatisfiable."""
        if not 0 < self.FUNDING_PERCENTAGE_BPS <= 10_000:
            raise ValueError("FUNDING_PERCENTAGE_BPS must be in (0, 10000]")
        if self.MIN_APR_BPS > self.MAX_APR_BPS:
            raise ValueError("MIN_APR_BPS must not exceed MAX_APR_BPS")
        if not 0 <= self.MAX_ACCEPTABLE_RISK <= 100:
            raise ValueError("MAX_ACCEPTABLE_RISK must be within 0..100")
        return self

    # ── Connection pool tuning ──
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20
    DB_POOL_TIMEOUT: int = 30  # seconds to wait for a connection from the pool
    DB_POOL_RECYCLE: int = 1800  # seconds before a connection is recycled

    # ── CORS ──
    CORS_ORIGINS: str = "*"

    # ── Logging ──
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    LOG_FILE_MAX_BYTES: int = 10 * 1024 * 1024
    LOG_FILE_BACKUP_COUNT: int = 5

    # ── Circuit breaker (database + outbound HTTP) ──
    CB_FAILURE_THRESHOLD: int = 5
    CB_RECOVERY_TIMEOUT: float = 30.0

    # ── Money & funding ──
    CURRENCY_DECIMALS: int = 6
    FUNDING_PERCENTAGE_BPS: int = 9_000  # investors may fund 90% of face value
    MIN_TENOR_DAYS: int = 7
    DEFAULT_GRACE_DAYS: int = 0

    # ── Pricing ──
    BASE_APR_BPS: int = 800
    RISK_PREMIUM_BPS_PER_POINT: int = 10
    MIN_APR_BPS: int = 500
    MAX_APR_BPS: int = 2_500
    MARKET_VOLATILITY_WEIGHT_BPS: int = 5_000
    MAX_ACCEPTABLE_RISK: int = 70

    # ── Verification oracle ──
    VERIFICATION_TIMEOUT_SECONDS: float = 300.0
    FALLBACK_MODE: FallbackMode = FallbackMode.FAIL_OPEN
    FALLBACK_MAX_AGE_SECONDS: float = 3_600.0
    ORACLE_URL: str = ""  # empty → built-in local rule-based oracle
    ORACLE_API_KEY: str = ""
    ORACLE_HTTP_TIMEOUT: float = 30.0
    MARKET_DATA_URL: str = ""  # empty → static configured tables

    # ── Background maintenance ──
    SWEEP_INTERVAL_SECONDS: float = 60.0

    @property
    def DATABASE_URL(self) -> str:
        """Construct the async database DSN.

        Returns an in-memory SQLite URL when ``USE_SQLITE`` is enabled,
        otherwise a PostgreSQL DSN for asyncpg.
        """
        if self.USE_SQLITE:
            return "sqlite+aiosqlite://"
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_SERVER}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
