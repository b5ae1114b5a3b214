"""
Embed Gateway Backend - server entry point
"""
import logging

from embed_gateway.config import Settings, configure_logging

logger = logging.getLogger(__name__)


if __name__ == "__main__":
    import uvicorn

    settings = Settings.from_env()
    configure_logging(settings.log_level)
    logger.info("Starting Embed Gateway on port %s (env=%s)", settings.port, settings.app_env)
    uvicorn.run(
        "embed_gateway.main:app",
        host="0.0.0.0",
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
