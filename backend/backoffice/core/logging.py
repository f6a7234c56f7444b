"""Log setup: one root handler, pipeline loggers at LOG_LEVEL, libraries quieter"""
import logging

from backoffice.core.config import settings

# Named loggers the pipeline writes to
PIPELINE_LOGGERS = ("webhook", "notification_queue", "cleanup", "security")

# Third-party loggers that are only interesting when something breaks
QUIET_LOGGERS = ("stripe", "resend", "urllib3", "httpx", "sqlalchemy.engine", "alembic")


def setup_logging(level: str = None):
    level_name = (level or settings.LOG_LEVEL).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)

    logging.basicConfig(
        level=numeric_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        force=True
    )
    for name in PIPELINE_LOGGERS:
        logging.getLogger(name).setLevel(numeric_level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))
