"""Log sinks for the pipeline (loguru).

Library modules only call ``logger``; sinks are installed once by the CLI.
"""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

TEXT_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss} | {level} | {module}:{function}:{line} | "
    "{extra[worker_id]} {extra[job_id]} | {message}"
)

logger.configure(extra={"worker_id": "-", "job_id": "-", "image_id": "-", "event": "-"})


def setup_logging(level: str = "INFO", log_file: Optional[str] = None, serialize: bool = False) -> None:
    """Replace loguru's default sink.

    Args:
        level: Minimum level for every sink
        log_file: Optional file sink, rotated at 1 MB and kept 7 days
        serialize: Emit JSON records instead of text
    """
    logger.remove()
    logger.add(sys.stderr, level=level, format=TEXT_FORMAT, serialize=serialize)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            rotation="1 MB",
            retention="7 days",
            level=level,
            format=TEXT_FORMAT,
            serialize=serialize,
            enqueue=True,
        )
