# School Photo QR Pipeline - Package
"""
QR code lifecycle pipeline for a school photography platform.
This package contains the services behind the HTTP API: portal tokens,
QR rendering and caching, batch processing, photo detection and
photographer notifications.
"""

__version__ = "1.0.0"
__description__ = "QR code lifecycle pipeline for school photo events"

# Import core components for easy access
from .modules.database_manager import DatabaseManager
from .modules.token_service import TokenService
from .modules.qr_generator import QREncoder, QROptions
from .modules.qr_cache import QRCache
from .modules.qr_service import QRService
from .modules.batch_processor import BatchProcessor, process_batch
from .modules.qr_detection import QRDetectionPipeline
from .modules.retry import RetryPolicy, RetryExecutor
from .modules.notification_system import WhatsAppNotifier

__all__ = [
    'DatabaseManager',
    'TokenService',
    'QREncoder',
    'QROptions',
    'QRCache',
    'QRService',
    'BatchProcessor',
    'process_batch',
    'QRDetectionPipeline',
    'RetryPolicy',
    'RetryExecutor',
    'WhatsAppNotifier'
]
