import logging
import sys

LOG_FORMAT: str = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def level_for(verbosity: int) -> int:
    if verbosity >= 2:
        return logging.DEBUG
    if verbosity == 1:
        return logging.INFO
    return logging.WARNING


def setup_logging(verbosity: int = 0) -> None:
    """Send log records to stderr; stdout carries the JSON report."""
    logging.basicConfig(
        level=level_for(verbosity),
        format=LOG_FORMAT,
        stream=sys.stderr,
        force=True,
    )
