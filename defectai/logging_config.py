from __future__ import annotations

import logging

from defectai.config import LoggingSettings

DEFAULT_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(settings: LoggingSettings, level_override: str | None = None) -> None:
    """Configure process-wide logging once at startup.

    ``level_override`` comes from the CLI and wins over the configured level.
    """

    level_name = (level_override or settings.level).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format=DEFAULT_LOG_FORMAT,
        force=True,
    )
