import os
import tempfile


def _int_env(name, default=None):
    value = os.environ.get(name)
    if not value:
        return default
    try:
        return int(value)
    except ValueError:
        return default


class Config:
    """Base configuration"""

    DEBUG = False

    # Backup definitions (sources, targets, loggers)
    DEFINITIONS_FILE = os.environ.get('OMNIBACKUP_DEFINITIONS') or '/etc/omnibackup/definitions.json'

    # Workspace for one run is created inside TEMP_DIR
    TEMP_DIR = os.environ.get('TEMP_DIR') or tempfile.gettempdir()

    # Application log file is written only when LOG_DIR is set
    LOG_DIR = os.environ.get('LOG_DIR')
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'INFO'

    # Parallel loads/saves; None runs one thread per source/target
    MAX_WORKERS = _int_env('MAX_WORKERS')

    # Scheduler
    SCHEDULE_CRON = os.environ.get('SCHEDULE_CRON') or '0 2 * * *'
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE') or 'UTC'
    SCHEDULER_MISFIRE_GRACE_TIME = 300


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'DEBUG'

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    DEFINITIONS_FILE = os.environ.get('OMNIBACKUP_DEFINITIONS') or os.path.join(DATA_DIR, 'definitions.json')
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = True
    TEMP_DIR = tempfile.gettempdir()
    LOG_DIR = None
    MAX_WORKERS = 2


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


def get_config(name=None):
    """Configuration class for a name, falling back to OMNIBACKUP_ENV and then the default."""
    name = name or os.environ.get('OMNIBACKUP_ENV', 'default')
    return config.get(name, config['default'])
