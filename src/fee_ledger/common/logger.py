'''
Application logger. Everything in the fee ledger logs through `log`.
'''
import logging
import sys

from .config import settings

LOGGER_NAME = 'FL-backend'


def setup_logger(level: str = settings.LOG_LEVEL) -> logging.Logger:
    """
    Configures the fee ledger logger once and returns it.
    Payment and reconciliation lines carry the module so a run can be
    followed across services.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level.upper())
    logger.propagate = False

    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(module)s.%(funcName)s: %(message)s'
        ))
        logger.addHandler(handler)

    return logger

log = setup_logger()
