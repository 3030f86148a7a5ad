"""
Centralized logging configuration for memcore.
"""

import logging
import sys
from typing import Optional

from .config import AppConfig

# Client libraries that log every request at INFO
_CHATTY_LOGGERS = ('opensearch', 'urllib3', 'botocore', 'gremlinpython', 'aiohttp')


def setup_logging(config: Optional[AppConfig] = None) -> None:
    """
    Configure the root logger once for the process.

    Args:
        config: AppConfig instance, uses the process configuration if None
    """
    if config is None:
        from .config import config as default_config
        config = default_config

    level = getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level,
                        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                        handlers=[logging.StreamHandler(sys.stdout)])

    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str, config: Optional[AppConfig] = None) -> logging.Logger:
    """
    Get a module logger at the configured level.

    Args:
        name: Logger name (usually __name__)
        config: AppConfig instance, uses the process configuration if None

    Returns:
        Logger instance
    """
    if config is None:
        from .config import config as default_config
        config = default_config

    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    return logger
