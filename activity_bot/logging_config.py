import logging
import sys

import structlog


def configure_logging(debug: bool = False, json: bool = False) -> None:
    """
    Configures structlog for the bot: console output by default, JSON when
    running under a log collector. Events go straight to stdout; the level
    filter lives in the bound logger.
    """
    level = logging.DEBUG if debug else logging.INFO

    renderer = structlog.processors.JSONRenderer() if json else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            # Contextual data bound per Run (run_id, branch).
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )
