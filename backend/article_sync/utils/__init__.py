"""
Utilities
"""
from .responses import ApiResponse
from .validators import validate_source_id, validate_priority, parse_date
from .crypto import SecretCrypto, get_crypto, reset_crypto
from .logger import setup_logger, get_logger, log_sync_event
from .timeutil import utcnow, isoformat, from_timestamp

__all__ = [
    'ApiResponse',
    'validate_source_id',
    'validate_priority',
    'parse_date',
    'SecretCrypto',
    'get_crypto',
    'reset_crypto',
    'setup_logger',
    'get_logger',
    'log_sync_event',
    'utcnow',
    'isoformat',
    'from_timestamp',
]
