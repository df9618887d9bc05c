# School Photo QR Pipeline Configuration

import os
from pathlib import Path

# Base directory
BASE_DIR = Path(__file__).parent.absolute()


def _env_bool(name, default=False):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.lower() in ['true', 'on', '1', 'yes']


def _env_optional_int(name):
    value = os.environ.get(name)
    return int(value) if value else None


def _env_optional_float(name):
    value = os.environ.get(name)
    return float(value) if value else None


class QRCodeConfig:
    """QR code rendering, caching and batch settings"""

    # Rendering defaults
    DEFAULT_SIZE = int(os.environ.get('QR_DEFAULT_SIZE') or 200)
    DEFAULT_ERROR_CORRECTION = os.environ.get('QR_DEFAULT_ERROR_CORRECTION') or 'M'
    DEFAULT_MARGIN = int(os.environ.get('QR_DEFAULT_MARGIN') or 2)
    DARK_COLOR = os.environ.get('QR_DARK_COLOR') or '#000000'
    LIGHT_COLOR = os.environ.get('QR_LIGHT_COLOR') or '#FFFFFF'

    # Cache
    CACHE_TTL = int(os.environ.get('QR_CACHE_TTL') or 3600)  # 1 hour
    CACHE_SWEEP_INTERVAL = int(os.environ.get('QR_CACHE_SWEEP_INTERVAL') or 300)  # 5 minutes
    CACHE_SWEEP_ENABLED = _env_bool('QR_CACHE_SWEEP_ENABLED', True)

    # Batch processing
    GENERATION_BATCH_SIZE = int(os.environ.get('QR_GENERATION_BATCH_SIZE') or 10)
    VALIDATION_BATCH_SIZE = int(os.environ.get('QR_VALIDATION_BATCH_SIZE') or 20)
    BATCH_CONCURRENCY_LIMIT = _env_optional_int('QR_BATCH_CONCURRENCY_LIMIT')
    BATCH_TIMEOUT = _env_optional_float('QR_BATCH_TIMEOUT')  # seconds, None for no limit


class DetectionConfig:
    """Photo QR detection settings"""

    MAX_WIDTH = int(os.environ.get('DETECTION_MAX_WIDTH') or 1920)
    MAX_HEIGHT = int(os.environ.get('DETECTION_MAX_HEIGHT') or 1080)
    ENHANCE_CONTRAST = _env_bool('DETECTION_ENHANCE_CONTRAST', True)
    BATCH_SIZE = int(os.environ.get('DETECTION_BATCH_SIZE') or 5)
    ROTATIONS = (0, 90, 180, 270)


class WhatsAppConfig:
    """WhatsApp Business Cloud API settings"""

    AUTOMATION_ENABLED = _env_bool('WHATSAPP_AUTOMATION_ENABLED', False)
    TOKEN = os.environ.get('META_WHATSAPP_TOKEN')
    PHONE_NUMBER_ID = os.environ.get('META_WHATSAPP_PHONE_NUMBER_ID')
    API_BASE = os.environ.get('WHATSAPP_API_BASE') or 'https://graph.facebook.com'
    API_VERSION = os.environ.get('WHATSAPP_API_VERSION') or 'v20.0'
    DEFAULT_COUNTRY_CODE = os.environ.get('WHATSAPP_DEFAULT_COUNTRY_CODE') or '54'

    # Delivery retries
    MAX_ATTEMPTS = int(os.environ.get('WHATSAPP_MAX_ATTEMPTS') or 3)
    RETRY_BASE_DELAY = float(os.environ.get('WHATSAPP_RETRY_BASE_DELAY') or 2.0)  # seconds
    RETRY_BACKOFF_FACTOR = float(os.environ.get('WHATSAPP_RETRY_BACKOFF_FACTOR') or 2.0)
    REQUEST_TIMEOUT = float(os.environ.get('WHATSAPP_REQUEST_TIMEOUT') or 10.0)


class Config:
    """Base configuration class"""

    # Flask Configuration
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'photo-qr-secret-key-change-me'
    MAX_CONTENT_LENGTH = 32 * 1024 * 1024  # 32MB, batch photo uploads

    # Database Configuration
    DATABASE_PATH = os.environ.get('DATABASE_PATH') or str(BASE_DIR / 'database' / 'photoqr.db')

    # Family portal
    PORTAL_BASE_URL = os.environ.get('PORTAL_BASE_URL') or 'http://localhost:3000'
    TOKEN_EXPIRY_DAYS = int(os.environ.get('TOKEN_EXPIRY_DAYS') or 30)

    # QR Code Configuration
    QR_DEFAULT_SIZE = QRCodeConfig.DEFAULT_SIZE
    QR_DEFAULT_ERROR_CORRECTION = QRCodeConfig.DEFAULT_ERROR_CORRECTION
    QR_DEFAULT_MARGIN = QRCodeConfig.DEFAULT_MARGIN
    QR_DARK_COLOR = QRCodeConfig.DARK_COLOR
    QR_LIGHT_COLOR = QRCodeConfig.LIGHT_COLOR
    QR_CACHE_TTL = QRCodeConfig.CACHE_TTL
    QR_CACHE_SWEEP_INTERVAL = QRCodeConfig.CACHE_SWEEP_INTERVAL
    QR_CACHE_SWEEP_ENABLED = QRCodeConfig.CACHE_SWEEP_ENABLED
    QR_GENERATION_BATCH_SIZE = QRCodeConfig.GENERATION_BATCH_SIZE
    QR_VALIDATION_BATCH_SIZE = QRCodeConfig.VALIDATION_BATCH_SIZE
    QR_BATCH_CONCURRENCY_LIMIT = QRCodeConfig.BATCH_CONCURRENCY_LIMIT
    QR_BATCH_TIMEOUT = QRCodeConfig.BATCH_TIMEOUT

    # Detection Configuration
    DETECTION_MAX_WIDTH = DetectionConfig.MAX_WIDTH
    DETECTION_MAX_HEIGHT = DetectionConfig.MAX_HEIGHT
    DETECTION_ENHANCE_CONTRAST = DetectionConfig.ENHANCE_CONTRAST
    DETECTION_BATCH_SIZE = DetectionConfig.BATCH_SIZE
    DETECTION_ROTATIONS = DetectionConfig.ROTATIONS

    # WhatsApp Configuration
    WHATSAPP_AUTOMATION_ENABLED = WhatsAppConfig.AUTOMATION_ENABLED
    WHATSAPP_TOKEN = WhatsAppConfig.TOKEN
    WHATSAPP_PHONE_NUMBER_ID = WhatsAppConfig.PHONE_NUMBER_ID
    WHATSAPP_API_BASE = WhatsAppConfig.API_BASE
    WHATSAPP_API_VERSION = WhatsAppConfig.API_VERSION
    WHATSAPP_DEFAULT_COUNTRY_CODE = WhatsAppConfig.DEFAULT_COUNTRY_CODE
    WHATSAPP_MAX_ATTEMPTS = WhatsAppConfig.MAX_ATTEMPTS
    WHATSAPP_RETRY_BASE_DELAY = WhatsAppConfig.RETRY_BASE_DELAY
    WHATSAPP_RETRY_BACKOFF_FACTOR = WhatsAppConfig.RETRY_BACKOFF_FACTOR
    WHATSAPP_REQUEST_TIMEOUT = WhatsAppConfig.REQUEST_TIMEOUT

    # Logging Configuration
    LOG_LEVEL = os.environ.get('LOG_LEVEL') or 'INFO'
    LOG_FILE = BASE_DIR / 'logs' / 'photoqr.log'
    LOG_MAX_BYTES = 10 * 1024 * 1024  # 10MB
    LOG_BACKUP_COUNT = 5

    # Development Configuration
    DEBUG = _env_bool('DEBUG', False)
    TESTING = False

    @classmethod
    def init_app(cls, app):
        """Initialize application configuration"""
        directories = [cls.LOG_FILE.parent]
        if cls.DATABASE_PATH != ':memory:':
            directories.append(Path(cls.DATABASE_PATH).parent)

        for directory in directories:
            directory.mkdir(parents=True, exist_ok=True)


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    TESTING = False

    DATABASE_PATH = os.environ.get('DATABASE_PATH') or str(BASE_DIR / 'database' / 'photoqr_dev.db')

    # More verbose logging
    LOG_LEVEL = 'DEBUG'


class TestingConfig(Config):
    """Testing configuration"""
    TESTING = True
    DEBUG = True

    # Use in-memory database for testing
    DATABASE_PATH = ':memory:'

    PORTAL_BASE_URL = 'http://portal.test'

    # No background threads or outbound calls in tests
    QR_CACHE_SWEEP_ENABLED = False
    WHATSAPP_AUTOMATION_ENABLED = False
    WHATSAPP_RETRY_BASE_DELAY = 0.0

    # Keep detection fast on small test images
    DETECTION_MAX_WIDTH = 800
    DETECTION_MAX_HEIGHT = 800


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    TESTING = False

    DATABASE_PATH = os.environ.get('DATABASE_PATH') or str(BASE_DIR / 'database' / 'photoqr_prod.db')

    # Production logging
    LOG_LEVEL = 'WARNING'

    @classmethod
    def init_app(cls, app):
        Config.init_app(app)

        # Production-specific initialization
        import logging
        from logging.handlers import RotatingFileHandler

        # Setup file logging
        if not app.debug:
            file_handler = RotatingFileHandler(
                cls.LOG_FILE,
                maxBytes=cls.LOG_MAX_BYTES,
                backupCount=cls.LOG_BACKUP_COUNT
            )
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s %(levelname)s: %(message)s [in %(pathname)s:%(lineno)d]'
            ))
            file_handler.setLevel(logging.INFO)
            app.logger.addHandler(file_handler)

            app.logger.setLevel(logging.INFO)
            app.logger.info('School Photo QR Pipeline startup')


# Configuration dictionary
config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': DevelopmentConfig
}


# Validation functions
def validate_config(config_class=Config):
    """Validate configuration settings"""
    errors = []

    if config_class.QR_DEFAULT_ERROR_CORRECTION not in ('L', 'M', 'Q', 'H'):
        errors.append(f"QR_DEFAULT_ERROR_CORRECTION must be L, M, Q or H, "
                      f"got {config_class.QR_DEFAULT_ERROR_CORRECTION}")

    for key in ('QR_DEFAULT_SIZE', 'QR_CACHE_TTL', 'QR_GENERATION_BATCH_SIZE',
                'QR_VALIDATION_BATCH_SIZE', 'DETECTION_BATCH_SIZE', 'TOKEN_EXPIRY_DAYS'):
        if getattr(config_class, key) <= 0:
            errors.append(f"{key} must be positive")

    if config_class.WHATSAPP_MAX_ATTEMPTS < 1:
        errors.append("WHATSAPP_MAX_ATTEMPTS must be at least 1")

    # Check WhatsApp credentials if automation is enabled
    if config_class.WHATSAPP_AUTOMATION_ENABLED:
        if not config_class.WHATSAPP_TOKEN:
            errors.append("META_WHATSAPP_TOKEN is required when WhatsApp automation is enabled")
        if not config_class.WHATSAPP_PHONE_NUMBER_ID:
            errors.append("META_WHATSAPP_PHONE_NUMBER_ID is required when WhatsApp automation is enabled")

    return errors


# Initialize configuration
def init_config(app, config_name=None):
    """Initialize application with configuration"""
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'default')

    config_class = config.get(config_name, DevelopmentConfig)
    app.config.from_object(config_class)
    config_class.init_app(app)

    # Validate configuration
    errors = validate_config(config_class)
    if errors:
        for error in errors:
            app.logger.error(f"Configuration error: {error}")
        raise RuntimeError("Configuration validation failed")

    return config_class
