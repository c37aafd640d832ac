"""Logging setup for the server entry points and the CLI."""

import logging
import os

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level=None):
    """Configure root logging once; level defaults to $LOG_LEVEL or INFO."""
    level = level or os.environ.get('LOG_LEVEL', 'INFO')
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # werkzeug request lines are noisy below INFO
    logging.getLogger('werkzeug').setLevel(max(level, logging.INFO))
