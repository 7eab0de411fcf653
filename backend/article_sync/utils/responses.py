"""
Unified API response format

    {"success": true,  "message": "...", "data": ...}
    {"success": false, "error": {"code": "...", "message": "...", "details": ...}}
"""
from flask import jsonify
from typing import Any, Optional, Dict


class ApiResponse:
    """API response builder; every method returns a (Response, status) tuple"""

    @staticmethod
    def _ok(data: Any, message: str, status: int) -> tuple:
        body = {'success': True, 'message': message}
        if data is not None:
            body['data'] = data
        return jsonify(body), status

    @staticmethod
    def success(data: Any = None, message: str = 'OK') -> tuple:
        return ApiResponse._ok(data, message, 200)

    @staticmethod
    def accepted(data: Any = None, message: str = 'Accepted') -> tuple:
        """Work was queued for a background worker (202)"""
        return ApiResponse._ok(data, message, 202)

    @staticmethod
    def error(
        message: str,
        code: int = 400,
        error_code: str = 'BAD_REQUEST',
        details: Optional[Dict] = None
    ) -> tuple:
        """
        Error response

        Args:
            message: Error message
            code: HTTP status code
            error_code: Machine-readable error code
            details: Extra error details
        """
        error = {'code': error_code, 'message': message}
        if details:
            error['details'] = details
        return jsonify({'success': False, 'error': error}), code

    @staticmethod
    def not_found(message: str = 'Resource not found') -> tuple:
        return ApiResponse.error(message, 404, 'NOT_FOUND')

    @staticmethod
    def unauthorized(message: str = 'Unauthorized') -> tuple:
        return ApiResponse.error(message, 401, 'UNAUTHORIZED')

    @staticmethod
    def forbidden(message: str = 'Forbidden') -> tuple:
        return ApiResponse.error(message, 403, 'FORBIDDEN')

    @staticmethod
    def validation_error(message: str, details: Optional[Dict] = None) -> tuple:
        return ApiResponse.error(message, 400, 'VALIDATION_ERROR', details)

    @staticmethod
    def server_error(message: str = 'Internal server error') -> tuple:
        return ApiResponse.error(message, 500, 'INTERNAL_ERROR')
