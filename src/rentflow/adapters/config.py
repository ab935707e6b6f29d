# src/rentflow/adapters/config.py
from decimal import Decimal
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppConfig(BaseSettings):
    # App & logging
    ENV: str = Field(default="dev")
    LOG_LEVEL: str = Field(default="INFO")

    # persistence
    DB_URI: str = Field(default="sqlite:///rentflow.db")

    # -----------------------------
    # Settlement rail
    # -----------------------------
    RAIL_BACKEND: Literal["circle", "simulated"] = Field(default="simulated")

    CIRCLE_API_KEY: str | None = Field(default=None)
    CIRCLE_BASE_URL: str = Field(default="https://api-sandbox.circle.com")
    CIRCLE_CHAIN: str = Field(default="SOL")
    CIRCLE_TIMEOUT_S: float = Field(default=20.0)
    CIRCLE_MAX_RETRIES: int = Field(default=3)
    CIRCLE_BACKOFF_BASE_S: float = Field(default=0.8)

    # -----------------------------
    # Transfer execution
    # -----------------------------
    POLL_INTERVAL_S: float = Field(default=3.0)
    MAX_POLL_ATTEMPTS: int = Field(default=10)
    MAX_TRANSFER_AMOUNT: Decimal = Field(default=Decimal("50000"))
    CURRENCY_DECIMALS: int = Field(default=6)

    # submitting rows older than this are resubmitted by the sweep
    STALE_SUBMITTING_S: float = Field(default=300.0)

    # -----------------------------
    # Autonomous authorization
    # -----------------------------
    RELIABILITY_THRESHOLD: float = Field(default=0.8)
    RELIABILITY_WINDOW: int = Field(default=6)
    FIRST_PAYMENT_CONFIDENCE: float = Field(default=50.0)
    CONFIDENCE_CAP: float = Field(default=95.0)
    AUTOPAY_HORIZON_DAYS: int = Field(default=3)

    # -----------------------------
    # Collaborators
    # -----------------------------
    SIGNATURE_SECRET: str | None = Field(default=None)
    ROLE_PROMOTION_URL: str | None = Field(default=None)

    model_config = SettingsConfigDict(
        env_prefix="RENTFLOW_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("RELIABILITY_THRESHOLD", mode="before")
    @classmethod
    def _to_fraction(cls, v: Any) -> Any:
        if v is None:
            return v
        if isinstance(v, str):
            v = v.strip().replace("%", "")
        try:
            f = float(v)
        except Exception as err:
            raise ValueError("threshold must be numeric or percent-like") from err
        if f > 1.0:
            f = f / 100.0
        if not (0.0 <= f <= 1.0):
            raise ValueError("threshold must be between 0 and 1")
        return f

    @field_validator("MAX_TRANSFER_AMOUNT", mode="before")
    @classmethod
    def _ceiling_positive(cls, v: Any) -> Any:
        d = Decimal(str(v))
        if d <= 0:
            raise ValueError("MAX_TRANSFER_AMOUNT must be > 0")
        return d

    @field_validator("MAX_POLL_ATTEMPTS", "RELIABILITY_WINDOW", mode="before")
    @classmethod
    def _at_least_one(cls, v: Any) -> Any:
        i = int(v)
        if i < 1:
            raise ValueError("must be >= 1")
        return i

    @field_validator("CURRENCY_DECIMALS", mode="before")
    @classmethod
    def _decimals_range(cls, v: Any) -> Any:
        i = int(v)
        if not (2 <= i <= 6):
            raise ValueError("CURRENCY_DECIMALS must be between 2 and 6")
        return i


config = AppConfig()
