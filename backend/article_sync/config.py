"""
Application configuration

All values can be overridden from the environment (or a .env file).
"""
import os
import secrets

from dotenv import load_dotenv

load_dotenv()

# Absolute path of the backend directory
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

DEFAULT_REMOTE_MEDIA_HOSTS = 'mmbiz.qpic.cn,mmbiz.qlogo.cn,mmfb.qpic.cn,res.wx.qq.com,wx.qlogo.cn'


def _env_list(name: str, default: str) -> list:
    return [item.strip() for item in os.environ.get(name, default).split(',') if item.strip()]


class Config:
    """Base configuration"""

    # ==================== Security ====================
    SECRET_KEY = os.environ.get('SECRET_KEY') or secrets.token_hex(32)

    # Fernet key used to encrypt source account secrets at rest
    SECRET_ENCRYPTION_KEY = os.environ.get('SECRET_ENCRYPTION_KEY')

    # Admin API key for operator endpoints
    ADMIN_API_KEY = os.environ.get('ADMIN_API_KEY')

    # ==================== Database ====================
    DATABASE_URL = os.environ.get('DATABASE_URL')
    if DATABASE_URL:
        SQLALCHEMY_DATABASE_URI = DATABASE_URL
    else:
        SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(BASE_DIR, "article_sync.db")}'

    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # ==================== CORS ====================
    CORS_ORIGINS = _env_list('CORS_ORIGINS', 'http://localhost:5173,http://127.0.0.1:5173')

    # ==================== Logging ====================
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_FILE = os.environ.get('LOG_FILE')

    # ==================== Media rehosting ====================
    MEDIA_PATH = os.environ.get('MEDIA_PATH') or os.path.join(BASE_DIR, 'datas', 'media')
    # Public prefix of rehosted media, served by the media blueprint
    MEDIA_BASE_URL = os.environ.get('MEDIA_BASE_URL', '/api/media').rstrip('/')
    # Hosts whose media gets rehosted; exact host, any subdomain, or a wildcard like *.qpic.cn
    REMOTE_MEDIA_HOSTS = _env_list('REMOTE_MEDIA_HOSTS', DEFAULT_REMOTE_MEDIA_HOSTS)
    MEDIA_MAX_CONCURRENCY = int(os.environ.get('MEDIA_MAX_CONCURRENCY', '5'))
    MEDIA_REQUEST_TIMEOUT = float(os.environ.get('MEDIA_REQUEST_TIMEOUT', '15'))
    MEDIA_FANOUT_TIMEOUT = float(os.environ.get('MEDIA_FANOUT_TIMEOUT', '60'))
    MEDIA_MAX_BYTES = int(os.environ.get('MEDIA_MAX_BYTES', str(20 * 1024 * 1024)))

    # ==================== Origin content API ====================
    ORIGIN_API_BASE = os.environ.get('ORIGIN_API_BASE', 'https://api.weixin.qq.com/cgi-bin').rstrip('/')
    ORIGIN_API_TIMEOUT = float(os.environ.get('ORIGIN_API_TIMEOUT', '10'))
    ORIGIN_PAGE_SIZE = int(os.environ.get('ORIGIN_PAGE_SIZE', '20'))

    # ==================== Sync ====================
    # Lease length of the per-source sync lock (seconds)
    SYNC_LOCK_TTL = int(os.environ.get('SYNC_LOCK_TTL', '1800'))
    SYNC_MAX_ERRORS = int(os.environ.get('SYNC_MAX_ERRORS', '100'))

    # ==================== Task queue ====================
    TASK_BATCH_SIZE = int(os.environ.get('TASK_BATCH_SIZE', '10'))
    TASK_TIMEOUT = int(os.environ.get('TASK_TIMEOUT', '300'))
    TASK_RETRY_BASE_DELAY = float(os.environ.get('TASK_RETRY_BASE_DELAY', '30'))
    TASK_RETRY_MAX_DELAY = float(os.environ.get('TASK_RETRY_MAX_DELAY', '1800'))

    @classmethod
    def init_paths(cls):
        """Create data directories"""
        if not os.path.exists(cls.MEDIA_PATH):
            os.makedirs(cls.MEDIA_PATH)

    @classmethod
    def get_cors_config(cls):
        """CORS options for /api/*"""
        return {
            "origins": cls.CORS_ORIGINS,
            "methods": ["GET", "POST", "PUT", "DELETE", "OPTIONS"],
            "allow_headers": ["Content-Type", "X-API-Key", "Authorization"],
            "supports_credentials": True,
        }


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    LOG_LEVEL = 'DEBUG'


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    LOG_LEVEL = 'WARNING'

    @classmethod
    def validate(cls):
        """Report missing production settings"""
        errors = []

        if not os.environ.get('SECRET_KEY'):
            errors.append('SECRET_KEY is not set')

        if not os.environ.get('SECRET_ENCRYPTION_KEY'):
            errors.append('SECRET_ENCRYPTION_KEY is not set (source secrets are stored unencrypted)')

        if not os.environ.get('ADMIN_API_KEY'):
            errors.append('ADMIN_API_KEY is not set (operator endpoints are disabled)')

        return errors


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    LOG_LEVEL = 'WARNING'
    MEDIA_MAX_CONCURRENCY = 3
    MEDIA_REQUEST_TIMEOUT = 2
    MEDIA_FANOUT_TIMEOUT = 10
    TASK_RETRY_BASE_DELAY = 0


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}


def get_config():
    """Pick the config class from FLASK_ENV"""
    env = os.environ.get('FLASK_ENV', 'development')
    return config.get(env, config['default'])
