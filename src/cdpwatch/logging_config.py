"""Logging setup for cdpwatch."""

import logging

from cdpwatch.config import CONFIG

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def _to_level(level: str | int) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(level: str | int | None = None) -> logging.Logger:
    """Configure the ``cdpwatch`` logger hierarchy.

    Args:
        level: Level for cdpwatch loggers. Defaults to CDPWATCH_LOGGING_LEVEL.
            The transport (``cdpwatch.cdp``) follows CDP_LOGGING_LEVEL unless
            a level is passed explicitly.

    Returns:
        The configured ``cdpwatch`` logger.
    """
    root_level = _to_level(level if level is not None else CONFIG.LOGGING_LEVEL)

    logger = logging.getLogger('cdpwatch')
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    logger.setLevel(root_level)
    logger.propagate = False

    cdp_level = root_level if level is not None else _to_level(CONFIG.CDP_LOGGING_LEVEL)
    logging.getLogger('cdpwatch.cdp').setLevel(cdp_level)

    # third-party connection chatter
    for noisy in ('websockets', 'httpx', 'httpcore'):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    return logger
