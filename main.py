"""
Stock-and-Flow Simulation Service
Entry point for the FastAPI application
"""

import uvicorn
from stockflow.api import app
from stockflow.utils.logging_config import setup_logging_from_settings, get_logger
from stockflow.config import get_settings

# Get configuration
settings = get_settings()

# Setup logging before starting the app
setup_logging_from_settings(settings)

logger = get_logger(__name__)

if __name__ == "__main__":
    logger.info("Starting Stock-and-Flow Simulation Service")
    logger.info(
        f"Environment: {settings.env}, "
        f"Log level: {settings.log_level}, "
        f"Format: {'JSON' if settings.log_format_json else 'Human-readable'}, "
        f"Resolution: {settings.resolution_mode} x{settings.resolver_passes}"
    )
    uvicorn.run(app, host="0.0.0.0", port=8000)
