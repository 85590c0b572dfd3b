"""
Main entry point for the S3 Portal.
"""

import logging
import sys

import structlog
import uvicorn

from s3portal.api.app import create_app
from s3portal.core.app import PortalApp
from s3portal.utils.env_config import AppSettings, get_settings

logger = structlog.get_logger(__name__)


def configure_logging(settings: AppSettings) -> None:
    """Configure structlog over stdlib logging."""
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.log_json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
    )


def main():
    """Main entry point for the application."""
    settings = get_settings()
    configure_logging(settings)

    try:
        portal = PortalApp(settings=settings)
    except ValueError as e:
        logger.error("Invalid configuration file", path=settings.config_path, error=str(e))
        sys.exit(1)

    logger.info(
        "Starting S3 Portal",
        host=settings.host,
        port=settings.port,
        stores=len(portal.registry),
        environment=settings.environment,
    )

    try:
        uvicorn.run(
            create_app(portal),
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
        )
    except KeyboardInterrupt:
        logger.info("Application interrupted by user")


if __name__ == "__main__":
    main()
