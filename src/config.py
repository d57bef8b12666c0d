"""Application configuration"""

import os
from decimal import Decimal
from pydantic_settings import BaseSettings
from typing import List, Optional


class Settings(BaseSettings):
    """Application settings"""

    # Application
    APP_NAME: str = "EstimateEngine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = os.getenv("DEBUG", "False").lower() == "true"
    ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")

    # API
    API_HOST: str = os.getenv("API_HOST", "0.0.0.0")
    API_PORT: int = int(os.getenv("API_PORT", "8000"))

    # Database
    DATABASE_URL: Optional[str] = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./estimates.db")

    # Pricing (fractions in [0, 1])
    TAX_RATE: Decimal = Decimal(os.getenv("TAX_RATE", "0.08"))
    DEPOSIT_PERCENTAGE: Decimal = Decimal(os.getenv("DEPOSIT_PERCENTAGE", "0.25"))

    # Change request auto-approval policy.
    # Zero means only cost-neutral requests qualify until product sets a bound.
    AUTO_APPROVAL_MAX_COST_DELTA_CENTS: int = int(os.getenv("AUTO_APPROVAL_MAX_COST_DELTA_CENTS", "0"))
    AUTO_APPROVAL_SAFE_REQUEST_TYPES: str = os.getenv(
        "AUTO_APPROVAL_SAFE_REQUEST_TYPES", "quantity_change,reschedule,note_only"
    )

    # Identity used when the caller does not supply one
    DEFAULT_ACTOR: str = os.getenv("DEFAULT_ACTOR", "admin")

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
    LOG_FILE: Optional[str] = os.getenv("LOG_FILE")

    class Config:
        env_file = ".env"
        case_sensitive = True

    @property
    def safe_request_types(self) -> List[str]:
        """Parsed AUTO_APPROVAL_SAFE_REQUEST_TYPES"""
        return [t.strip() for t in self.AUTO_APPROVAL_SAFE_REQUEST_TYPES.split(",") if t.strip()]


# Global settings instance
settings = Settings()
