from decimal import Decimal
from functools import lru_cache
from typing import List

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # Application
    APP_NAME: str = "Affiliate Ledger API"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # CORS
    CORS_ORIGINS: List[str] = ["*"]

    # Admin routes compare this against the X-Admin-Token header
    ADMIN_TOKEN: str

    CURRENCY: str = "INR"

    # Commission rules
    DIRECT_COMMISSION_RATE: Decimal = Decimal("0.58")
    TEAM_COMMISSION_RATES: dict[str, Decimal] = Field(
        default_factory=lambda: {"basic": Decimal("0.12"), "pro": Decimal("0.17")}
    )
    PACKAGE_PRICES: dict[str, Decimal] = Field(
        default_factory=lambda: {"basic": Decimal("1499"), "pro": Decimal("2999")}
    )

    # Withdrawals
    MIN_WITHDRAWAL_AMOUNT: Decimal = Decimal("200")
    LOCK_TIMEOUT_SECONDS: float = 5.0

    # Payout rail
    PAYOUT_MAX_ATTEMPTS: int = 5
    PAYOUT_BACKOFF_BASE_SECONDS: float = 0.5
    PAYOUT_BACKOFF_MAX_SECONDS: float = 8.0
    PAYOUT_TIMEOUT_SECONDS: float = 30.0

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=True,
        extra="ignore",
    )

    @model_validator(mode="after")
    def check_commission_rates(self) -> "Settings":
        rates = [self.DIRECT_COMMISSION_RATE, *self.TEAM_COMMISSION_RATES.values()]
        if any(rate < 0 for rate in rates):
            raise ValueError("commission rates must not be negative")
        worst_case = self.DIRECT_COMMISSION_RATE + max(self.TEAM_COMMISSION_RATES.values(), default=Decimal("0"))
        if worst_case >= 1:
            raise ValueError(
                f"direct + team commission ({worst_case}) must stay below the purchase amount"
            )
        if self.PAYOUT_MAX_ATTEMPTS < 1:
            raise ValueError("PAYOUT_MAX_ATTEMPTS must be at least 1")
        return self

    def team_rate(self, package: str) -> Decimal:
        return self.TEAM_COMMISSION_RATES.get(package, Decimal("0"))


@lru_cache()
def get_settings() -> Settings:
    return Settings()
