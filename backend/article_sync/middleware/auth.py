"""
Authentication middleware for operator endpoints
"""
import hmac
import os
from functools import wraps

from flask import current_app, request

from ..utils.responses import ApiResponse


def get_current_api_key() -> str:
    """API key from the X-API-Key request header"""
    return request.headers.get('X-API-Key', '')


def require_admin(f):
    """
    Admin-only decorator.

    Requires ADMIN_API_KEY to be configured; without it every call is
    refused rather than left open.
    """
    @wraps(f)
    def decorated(*args, **kwargs):
        api_key = get_current_api_key()
        admin_key = current_app.config.get('ADMIN_API_KEY') or os.environ.get('ADMIN_API_KEY')

        if not admin_key:
            return ApiResponse.forbidden('This operation requires ADMIN_API_KEY to be configured')

        if not api_key:
            return ApiResponse.unauthorized('Missing admin API key')

        if not hmac.compare_digest(api_key, admin_key):
            return ApiResponse.forbidden('Invalid admin API key')

        return f(*args, **kwargs)
    return decorated
