"""Process-wide logging setup for the CLI and scheduler entry points."""

import logging
import sys

TEXT_FORMAT = "%(levelname)s:%(name)s:%(message)s"
TIMESTAMPED_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "info", fmt: str = "text") -> None:
    """Install a stderr handler and set the ``erpsync`` logger level.

    Args:
        level: Log level name (debug, info, warning, error).
        fmt: ``text`` for the compact format, ``timestamped`` to prefix
            each line with the time.
    """
    log_format = TIMESTAMPED_FORMAT if fmt == "timestamped" else TEXT_FORMAT
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=logging.WARNING,
        format=log_format,
        handlers=[logging.StreamHandler(sys.stderr)],
    )
    logging.getLogger("erpsync").setLevel(numeric_level)
