import os
from decimal import Decimal

from pydantic import BaseModel, Field, ConfigDict, field_validator


ENV_PREFIX = "ROYALTY_"


class EngineSettings(BaseModel):
    base_currency: str = Field(default="USD", description="Currency used for aggregation and comparison")
    catalog_owner_id: str = Field(default="catalog-owner", description="Recipient that keeps unsplit revenue")
    default_minimum_payout: Decimal = Decimal("50.00")
    rate_fetch_max_attempts: int = Field(default=3, ge=1)
    rate_fetch_backoff_seconds: float = Field(default=0.5, ge=0)
    rate_fetch_timeout_seconds: float = Field(default=10.0, gt=0)
    max_workers: int = Field(default=4, ge=1)

    model_config = ConfigDict(frozen=True)

    @field_validator("base_currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        value = value.strip().upper()
        if len(value) != 3 or not value.isalpha():
            raise ValueError(f"Invalid currency code: {value!r}")
        return value

    @classmethod
    def from_env(cls) -> "EngineSettings":
        """Build settings from ROYALTY_* environment variables, falling back to defaults."""
        values = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        return cls(**values)
