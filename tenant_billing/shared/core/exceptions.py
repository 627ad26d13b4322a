from typing import Optional, Dict, Any


class TenantBillingException(Exception):
    """Base exception for all tenant billing errors."""

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        status_code: int = 500,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}


class ConfigurationError(TenantBillingException):
    """Raised when application configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        code: str = "config_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=500, details=details)


class ResourceNotFoundError(TenantBillingException):
    """Raised when a requested resource is not found."""

    def __init__(
        self,
        message: str,
        code: str = "not_found",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=404, details=details)


class AuthError(TenantBillingException):
    """Raised when a caller fails shared-secret authentication."""

    def __init__(
        self,
        message: str,
        code: str = "auth_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=401, details=details)


class StoreAdapterError(TenantBillingException):
    """Raised when the billing store cannot read or persist a record."""

    def __init__(
        self,
        message: str,
        code: str = "store_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, status_code=503, details=details)
