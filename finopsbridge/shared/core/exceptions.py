from typing import Optional, Dict, Any


class FinOpsBridgeError(Exception):
    """Base exception for all enforcement engine errors."""

    def __init__(
        self,
        message: str,
        code: str = "internal_error",
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


class ConfigurationError(FinOpsBridgeError):
    """Raised when worker configuration or stored credentials are invalid or missing."""

    def __init__(self, message: str, code: str = "config_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class CollectorError(FinOpsBridgeError):
    """Raised when billing data cannot be fetched for a cloud account."""

    def __init__(self, message: str, code: str = "collector_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class EvaluationError(FinOpsBridgeError):
    """Raised when a rule definition is missing, fails to compile, or fails to evaluate."""

    def __init__(self, message: str, code: str = "evaluation_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class RemediationError(FinOpsBridgeError):
    """Raised when a remediation action cannot be completed."""

    def __init__(self, message: str, code: str = "remediation_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class DeliveryError(FinOpsBridgeError):
    """Raised when a webhook delivery fails."""

    def __init__(self, message: str, code: str = "delivery_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class RepositoryError(FinOpsBridgeError):
    """Raised when the backing store cannot be read or written."""

    def __init__(self, message: str, code: str = "repository_error", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code=code, details=details)


class ViolationConflictError(RepositoryError):
    """Raised when a second pending violation would be inserted for the same policy."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, code="violation_conflict", details=details)
