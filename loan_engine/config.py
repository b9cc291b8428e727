"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal

from pydantic_settings import BaseSettings


class LoanEngineConfig(BaseSettings):
    """Loan engine configuration"""

    # Storage configuration
    database_url: str = "memory://"  # or sqlite:///path/to/loans.db

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Loan term bounds
    min_principal: Decimal = Decimal("100")
    max_principal: Decimal = Decimal("1000000")
    min_interest_rate: Decimal = Decimal("0")
    max_interest_rate: Decimal = Decimal("100")
    min_term: int = 1
    max_term: int = 360
    max_term_months: int = 360  # 30 years, applies after converting the term unit
    max_purpose_length: int = 500

    # Lateness
    late_fee_rate_percent: Decimal = Decimal("5")
    late_fee_period_days: int = 30

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "LOAN_ENGINE_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LoanEngineConfig()


def get_config() -> LoanEngineConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanEngineConfig:
    """Reload configuration from environment"""
    global config
    config = LoanEngineConfig()
    return config
