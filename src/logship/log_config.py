"""
Structured logging setup for the shipper's own diagnostics.

The shipper logs through structlog on top of the stdlib logging module, so
its events land wherever the application's logging goes. Loggers under the
"logship" namespace are never shipped to the intake.
"""

import logging

import structlog
from structlog.types import Processor


def configure_logging(log_level: str = "INFO", json_output: bool = False) -> None:
    """Configure structured logging for applications that have no setup of their own."""
    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, log_level.upper()),
    )

    # aiohttp's access and client loggers are noisy at DEBUG
    logging.getLogger("aiohttp").setLevel(logging.WARNING)

    renderer: Processor
    if json_output:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
