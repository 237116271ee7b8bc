import logging

from rich.console import Console
from rich.logging import RichHandler


LOGGER_NAME = "relock"

_LEVELS = {
    0: logging.WARNING,
    1: logging.INFO,
}


def configure_logging(verbosity: int = 0, console: Console | None = None) -> logging.Logger:
    """Route ``relock`` log records to a rich handler on stderr.

    Called once by the command line, library code only ever logs.
    """
    logger = logging.getLogger(LOGGER_NAME)
    level = _LEVELS.get(verbosity, logging.DEBUG)

    for handler in list(logger.handlers):
        if isinstance(handler, RichHandler):
            logger.removeHandler(handler)

    handler = RichHandler(
        console=console or Console(stderr=True),
        show_path=verbosity > 1,
        rich_tracebacks=verbosity > 1,
        markup=False,
    )
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger
