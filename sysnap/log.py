from __future__ import annotations

import logging
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

STREAM_FORMATTER = logging.Formatter("%(message)s")
FILE_FORMATTER = logging.Formatter("[%(asctime)s] [%(levelname)-5s] [%(name)s] %(message)s")

VERBOSITY_LEVELS = {
    1: logging.ERROR,
    2: logging.WARNING,
    3: logging.INFO,
}


def get_stream_level(verbosity: int) -> int:
    if verbosity >= 4:
        return logging.DEBUG
    return VERBOSITY_LEVELS.get(verbosity, logging.CRITICAL)


def setup_logging(logger: logging.Logger, path: Path | None, verbosity: int) -> None:
    """Log to stderr at a level following ``verbosity`` and, when ``path`` is set, everything to a file.

    The file handler is also attached to the root logger, so messages of the per module loggers
    end up in the log file regardless of the console verbosity.
    """
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(STREAM_FORMATTER)
    stream_handler.setLevel(get_stream_level(verbosity))
    logger.addHandler(stream_handler)

    if path:
        file_handler = new_file_handler(path)
        logger.addHandler(file_handler)

        root_logger = logging.getLogger()
        root_logger.addHandler(file_handler)
        root_logger.setLevel(logging.DEBUG)

    logger.setLevel(logging.DEBUG)


def new_file_handler(path: Path) -> logging.FileHandler:
    file_handler = logging.FileHandler(path)
    file_handler.setFormatter(FILE_FORMATTER)
    file_handler.setLevel(logging.DEBUG)
    return file_handler
