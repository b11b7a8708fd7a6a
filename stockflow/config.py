"""
Configuration module for the stock-and-flow simulation service
Centralizes all environment variable access and configuration settings
"""

from typing import List, Optional
from pydantic_settings import BaseSettings, SettingsConfigDict

from stockflow.constants import (
    DEFAULT_RESOLVER_PASSES,
    DIVERGENCE_THRESHOLD,
    MAX_SIMULATION_STEPS,
)


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables

    All settings can be overridden via environment variables
    prefixed with STOCKFLOW_ (e.g. STOCKFLOW_RESOLVER_PASSES=5).
    Default values are provided for development.
    """

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "human"  # "json" or "human"
    log_file: Optional[str] = None
    log_max_bytes: int = 10 * 1024 * 1024  # 10 MB
    log_backup_count: int = 5

    # Environment
    env: str = "development"  # "development" or "production"
    debug: bool = False

    # CORS configuration
    allowed_origins: str = "*"  # Comma-separated list of origins

    # Request limits
    max_request_size: int = 1 * 1024 * 1024  # 1 MB
    max_formula_length: int = 2000
    max_formula_depth: int = 50

    # Simulation configuration
    simulation_timeout: int = 60  # seconds
    resolver_passes: int = DEFAULT_RESOLVER_PASSES
    resolution_mode: str = "passes"  # "passes" or "ordered"
    divergence_threshold: float = DIVERGENCE_THRESHOLD
    max_simulation_steps: int = MAX_SIMULATION_STEPS

    # Sensitivity batch configuration
    max_batch_trials: int = 500
    batch_max_workers: Optional[int] = None  # None = sequential

    model_config = SettingsConfigDict(
        env_prefix="STOCKFLOW_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def log_format_json(self) -> bool:
        """Check if logging should use JSON format"""
        return self.log_format.lower() == "json"

    @property
    def is_production(self) -> bool:
        """Check if running in production environment"""
        return self.env.lower() == "production"

    @property
    def allowed_origins_list(self) -> List[str]:
        """Get allowed origins as a list"""
        origins = [origin.strip() for origin in self.allowed_origins.split(",")]
        if "*" in origins:
            return ["*"]
        return origins

    def __init__(self, **kwargs):
        """Initialize settings with environment variable overrides"""
        super().__init__(**kwargs)
        # Force JSON logging in production
        if self.is_production and not self.log_format_json:
            self.log_format = "json"


# Global settings instance (singleton)
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global settings instance (singleton pattern)

    Returns:
        Settings instance with current configuration
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next get_settings() re-reads the environment"""
    global _settings
    _settings = None
