"""
Exception hierarchy for the VotePay payment service.

Design:
    - Each exception carries an `http_status_code` for automatic handler mapping.
    - `to_dict()` returns full internal details (for logging).
    - `to_safe_dict()` returns a sanitized `{success: false, ...}` body for clients.
    - Callers branch on the exception type, never on message text.
"""

from typing import Optional, Dict, Any


class BaseAppError(Exception):
    """Base exception for all application-specific errors"""

    http_status_code: int = 500

    def __init__(self, message: str, details: str = None, context: Dict[str, Any] = None):
        self.message = message
        self.details = details
        self.context = context or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Full details for internal logging; never sent to clients."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
            "context": self.context,
        }

    def to_safe_dict(self) -> Dict[str, Any]:
        """Sanitized response safe for end-users, without internal details."""
        return {
            "success": False,
            "error": self.__class__.__name__,
            "message": self.message,
        }


class PaymentValidationError(BaseAppError):
    """Raised when a payment request fails validation (missing fields, bad channel)"""

    http_status_code: int = 400

    def __init__(self, message: str, field: str = None, value: Any = None):
        self.field = field
        self.value = value
        context = {}

        if field:
            context["field"] = field
            if value is not None:
                context["invalid_value"] = str(value)

        details = f"Validation failed for field: {field}" if field else None
        super().__init__(message, details, context)

    def to_safe_dict(self) -> Dict[str, Any]:
        result = super().to_safe_dict()
        if self.field:
            result["field"] = self.field
        return result


class MalformedWebhookError(BaseAppError):
    """Raised when a callback carries neither a usable reference nor a provider id"""

    http_status_code: int = 400

    def __init__(self, ext_reference: Optional[str] = None):
        self.ext_reference = ext_reference
        super().__init__(
            "Webhook payload has no resolvable transaction identifier",
            f"Unresolvable ext_transaction_id: {ext_reference!r}",
            {"ext_transaction_id": ext_reference},
        )

    def to_safe_dict(self) -> Dict[str, Any]:
        result = super().to_safe_dict()
        result["received"] = False
        return result


class PaymentRejectedError(BaseAppError):
    """Raised when the aggregator refuses a collection request"""

    http_status_code: int = 400

    def __init__(self, message: str, provider_message: str = None):
        self.provider_message = provider_message
        context = {"provider_message": provider_message} if provider_message else {}
        super().__init__(message, "Aggregator rejected the collection request", context)


class AccountConfigurationError(BaseAppError):
    """Raised when the aggregator rejects a request because of merchant account setup"""

    http_status_code: int = 403

    def __init__(self, message: str, provider_message: str = None):
        self.provider_message = provider_message
        context = {"provider_message": provider_message} if provider_message else {}
        super().__init__(message, "Aggregator account is not configured for collection", context)


class NotFoundError(BaseAppError):
    """Raised when a requested resource is not found"""

    http_status_code: int = 404

    def __init__(self, resource: str, identifier: str):
        self.resource = resource
        self.identifier = identifier
        super().__init__(
            f"{resource} not found",
            f"{resource} with id '{identifier}' does not exist",
            {"resource": resource, "identifier": identifier},
        )


class SecurityError(BaseAppError):
    """Raised for authentication/authorization failures (e.g., invalid HMAC signatures)"""

    http_status_code: int = 401

    def __init__(self, message: str, security_context: str = None):
        self.security_context = security_context
        context = {}
        if security_context:
            context["security_context"] = security_context

        details = f"Security failure in: {security_context}" if security_context else None
        super().__init__(message, details, context)

    def to_safe_dict(self) -> Dict[str, Any]:
        """Never expose security_context to clients."""
        return {
            "success": False,
            "error": "SecurityError",
            "message": self.message,
        }


class UpstreamServiceError(BaseAppError):
    """Raised when a third-party service (aggregator, email, WhatsApp) cannot be reached"""

    http_status_code: int = 500

    def __init__(self, message: str, service: str = None, upstream_error: str = None):
        self.service = service
        self.upstream_error = upstream_error
        context = {}
        if service:
            context["service"] = service
        if upstream_error:
            context["upstream_error"] = upstream_error

        details = f"Upstream call failed: {service}" if service else None
        super().__init__(message, details, context)

    def to_safe_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error": "UpstreamServiceError",
            "message": "The payment provider could not be reached. Please try again later.",
        }


class DatabaseError(BaseAppError):
    """Raised for database operation failures"""

    http_status_code: int = 500

    def __init__(self, message: str, operation: str = None, database_error: str = None):
        self.operation = operation
        self.database_error = database_error
        context = {}
        if operation:
            context["operation"] = operation
        if database_error:
            context["database_error"] = database_error

        details = f"Failed database operation: {operation}" if operation else None
        super().__init__(message, details, context)

    def to_safe_dict(self) -> Dict[str, Any]:
        """Never expose operation names or DB errors to clients."""
        return {
            "success": False,
            "error": "DatabaseError",
            "message": "An internal error occurred. Please try again later.",
        }


class ConfigurationError(BaseAppError):
    """Raised for configuration-related issues (missing env vars, invalid settings)"""

    http_status_code: int = 500

    def __init__(self, message: str, config_key: str = None, expected_value: str = None):
        self.config_key = config_key
        self.expected_value = expected_value
        context = {}
        if config_key:
            context["config_key"] = config_key
        if expected_value:
            context["expected_value"] = expected_value

        details = f"Configuration error for: {config_key}" if config_key else None
        super().__init__(message, details, context)

    def to_safe_dict(self) -> Dict[str, Any]:
        """Never expose config internals to clients."""
        return {
            "success": False,
            "error": "ConfigurationError",
            "message": "A server configuration error occurred.",
        }
