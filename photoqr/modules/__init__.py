# School Photo QR Pipeline - Modules Package
"""
Core service modules of the QR pipeline.
"""

__version__ = "1.0.0"
__description__ = "Core modules for the school photo QR pipeline"

# Module descriptions
MODULES = {
    'errors': 'Error types shared by the services',
    'database_manager': 'Database operations and schema management',
    'token_service': 'Portal access tokens and URLs',
    'qr_generator': 'QR code rendering and print sheets',
    'qr_cache': 'TTL cache of rendered QR codes',
    'qr_service': 'QR lifecycle for subjects and student identification codes',
    'batch_processor': 'Bounded-concurrency batch operations, export and import',
    'qr_detection': 'QR detection and auto-tagging for photos',
    'retry': 'Retry policy with exponential backoff',
    'notification_system': 'WhatsApp notifications for paid orders'
}

def get_module_info():
    """Get information about available modules"""
    return MODULES
