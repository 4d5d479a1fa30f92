import os
import logging
from logging.handlers import RotatingFileHandler

__version__ = '1.0.0'


def configure_logging(settings):
    """Configure application logging"""

    # Set log level based on environment
    default_level = 'DEBUG' if getattr(settings, 'DEBUG', False) else 'INFO'
    log_level = logging.getLevelName((getattr(settings, 'LOG_LEVEL', None) or default_level).upper())
    if not isinstance(log_level, int):
        log_level = logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler, only when a log directory is configured
    log_dir = getattr(settings, 'LOG_DIR', None)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)

        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'omnibackup.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")
    return logger
