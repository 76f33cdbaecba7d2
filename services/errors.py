"""
services/errors.py - Taxonomía de errores del servicio de suscripciones
"""


class EntitlementError(Exception):
    """Error base. Lleva el código HTTP y la clave del mensaje para el usuario"""
    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message_key="internal_error", detail=None):
        super().__init__(detail or message_key)
        self.message_key = message_key
        self.detail = detail


class ValidationError(EntitlementError):
    status_code = 400
    code = "VALIDATION_ERROR"


class AuthorizationError(EntitlementError):
    status_code = 403
    code = "UNAUTHORIZED"

    def __init__(self, message_key="unauthorized", detail=None):
        super().__init__(message_key, detail)


class NotFoundError(EntitlementError):
    status_code = 404
    code = "NOT_FOUND"


class ConflictError(EntitlementError):
    status_code = 409
    code = "CONFLICT"


class SignatureError(EntitlementError):
    status_code = 400
    code = "INVALID_SIGNATURE"

    def __init__(self, message_key="invalid_signature", detail=None):
        super().__init__(message_key, detail)


class UpstreamError(EntitlementError):
    """El procesador de pagos o el almacenamiento fallaron"""
    status_code = 502
    code = "UPSTREAM_ERROR"

    def __init__(self, message_key="payment_unavailable", detail=None):
        super().__init__(message_key, detail)
