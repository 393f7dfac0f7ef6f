import os


def _env_int(name, default):
    value = os.environ.get(name)
    return int(value) if value not in (None, '') else default


class Config:
    """Base configuration"""

    # Directories
    BACKUP_DIR = os.environ.get('BACKUP_DIR') or '/backup/rman'
    LOCK_DIR = os.environ.get('LOCK_DIR') or '/var/lock/drbackup'
    LOG_DIR = os.environ.get('LOG_DIR') or '/var/log/drbackup'
    DEBUG = False

    # Control file snapshot
    CONTROLFILE_PREFIX = os.environ.get('CONTROLFILE_PREFIX') or 'controlfile'

    # Retention
    COMPRESS_AGE_DAYS = _env_int('COMPRESS_AGE_DAYS', 1)
    COMPRESSION_FORMAT = os.environ.get('COMPRESSION_FORMAT') or 'gz'  # gz, bz2, xz
    # Recovery window handed to RMAN. The source scripts used 3 days; tune per cadence.
    RETENTION_WINDOW_DAYS = _env_int('RETENTION_WINDOW_DAYS', 3)

    # Backup levels
    INCREMENTAL_LEVEL = _env_int('INCREMENTAL_LEVEL', 1)

    # Timeouts (seconds) for every external invocation
    BACKUP_TIMEOUT = _env_int('BACKUP_TIMEOUT', 6 * 3600)
    RETENTION_TIMEOUT = _env_int('RETENTION_TIMEOUT', 3600)
    COMPRESSION_TIMEOUT = _env_int('COMPRESSION_TIMEOUT', 2 * 3600)
    REPLICATION_TIMEOUT = _env_int('REPLICATION_TIMEOUT', 4 * 3600)
    TRIGGER_TIMEOUT = _env_int('TRIGGER_TIMEOUT', 2 * 3600)
    SSH_CONNECT_TIMEOUT = _env_int('SSH_CONNECT_TIMEOUT', 30)

    # RMAN
    RMAN_BINARY = os.environ.get('RMAN_BINARY') or 'rman'
    RMAN_TARGET = os.environ.get('RMAN_TARGET') or '/'
    ORACLE_SID = os.environ.get('ORACLE_SID')
    ORACLE_HOME = os.environ.get('ORACLE_HOME')

    # Replication: 'sftp', 's3' or 'local'
    REPLICATOR = os.environ.get('REPLICATOR') or 'sftp'
    LOCAL_REPLICA_DIR = os.environ.get('LOCAL_REPLICA_DIR')
    S3_BUCKET = os.environ.get('S3_BUCKET')
    S3_REGION = os.environ.get('S3_REGION') or 'us-east-1'
    S3_PREFIX = os.environ.get('S3_PREFIX') or ''
    AWS_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    AWS_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')

    # DR site
    DR_HOST = os.environ.get('DR_HOST')
    DR_PORT = _env_int('DR_PORT', 22)
    DR_USER = os.environ.get('DR_USER') or 'oracle'
    DR_PASSWORD = os.environ.get('DR_PASSWORD')
    DR_PASSWORD_ENCRYPTED = os.environ.get('DR_PASSWORD_ENCRYPTED')
    DR_KEY_FILE = os.environ.get('DR_KEY_FILE') or '~/.ssh/id_rsa'
    DR_DEST_PATH = os.environ.get('DR_DEST_PATH') or '/backup/rman'
    DR_RESTORE_COMMAND = os.environ.get('DR_RESTORE_COMMAND') or '/home/oracle/scripts/dr_restore.sh'

    # Master password for encrypted secrets
    MASTER_PASSWORD = os.environ.get('DRBACKUP_MASTER_PASSWORD')
    MASTER_SALT = os.environ.get('DRBACKUP_MASTER_SALT')  # base64

    # Scheduler (crontab expressions, empty disables the kind)
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE') or 'UTC'
    SCHEDULES = {
        'full': os.environ.get('SCHEDULE_FULL', '0 1 * * 0'),
        'incremental': os.environ.get('SCHEDULE_INCREMENTAL', '0 1 * * 1-6'),
        'archivelog': os.environ.get('SCHEDULE_ARCHIVELOG', '0 */2 * * *'),
        'dr_trigger': os.environ.get('SCHEDULE_DR_TRIGGER', '30 6 * * *'),
    }

    def __init__(self, **overrides):
        for key, value in overrides.items():
            if not hasattr(self, key):
                raise ValueError(f"Unknown configuration key: {key}")
            setattr(self, key, value)


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True

    # Use local data directory for development
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    BACKUP_DIR = os.path.join(DATA_DIR, 'backups')
    LOCK_DIR = os.path.join(DATA_DIR, 'locks')
    LOG_DIR = os.path.join(DATA_DIR, 'logs')
    REPLICATOR = 'local'
    LOCAL_REPLICA_DIR = os.path.join(DATA_DIR, 'replica')


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False


class TestingConfig(Config):
    """Testing configuration"""
    DEBUG = True
    REPLICATOR = 'local'
    BACKUP_TIMEOUT = 60
    RETENTION_TIMEOUT = 60
    COMPRESSION_TIMEOUT = 60
    REPLICATION_TIMEOUT = 60
    TRIGGER_TIMEOUT = 60


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': ProductionConfig
}


def load_config(config_name=None, **overrides):
    """
    Build a configuration instance.

    Args:
        config_name: Key into ``config``; defaults to $DRBACKUP_ENV or 'production'
        **overrides: Attribute values replacing the class defaults

    Returns:
        Config instance

    Raises:
        ValueError: If config_name is unknown
    """
    if config_name is None:
        config_name = os.environ.get('DRBACKUP_ENV', 'production')

    if config_name not in config:
        raise ValueError(
            f"Invalid configuration name: {config_name}. "
            f"Valid options: {list(config.keys())}"
        )

    return config[config_name](**overrides)
