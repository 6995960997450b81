"""Logging setup for the feedback loop command-line entry points.

Settings come from the ``logging`` section of ``config/feedback_loop.yaml``
(see LoggingConfig). Setup is idempotent: if the target logger already has
handlers, nothing is changed.
"""

import logging
from pathlib import Path
from typing import Optional

from .config import LoggingConfig

logger = logging.getLogger(__name__)


def configure_logging(
    settings: Optional[LoggingConfig] = None,
    level: Optional[int] = None,
    logger_name: Optional[str] = None,
) -> bool:
    """Attach a console handler and, if ``settings.log_dir`` is set, a file handler.

    Args:
        settings: Logging section of the loaded configuration (defaults if omitted)
        level: Overrides ``settings.level``, e.g. DEBUG for ``--verbose``
        logger_name: Logger to configure; the root logger if omitted

    Returns:
        True if handlers were installed, False if logging was already set up
    """
    settings = settings or LoggingConfig()
    target = logging.getLogger(logger_name)
    if target.handlers:
        return False

    formatter = logging.Formatter(settings.format)

    console = logging.StreamHandler()
    console.setFormatter(formatter)
    target.addHandler(console)
    target.setLevel(settings.level_number if level is None else level)

    if settings.log_dir:
        log_path = Path(settings.log_dir) / settings.log_file
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path, mode="a")
        except OSError as e:
            logger.warning(f"File logging disabled, cannot open {log_path}: {e}")
        else:
            file_handler.setFormatter(formatter)
            target.addHandler(file_handler)
    return True
