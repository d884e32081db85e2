"""
Laburandik Seller Ops - Custom Exceptions
=========================================
Exception hierarchy with stable reason codes for API responses.
"""

from typing import Optional, Dict, Any


class SellerOpsError(Exception):
    """Base exception for all seller-ops errors."""

    reason: str = "INTERNAL_ERROR"
    status_code: int = 500
    needs_auth: bool = False

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        original_error: Optional[Exception] = None,
        reason: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.context = context or {}
        self.original_error = original_error
        if reason:
            self.reason = reason

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/API responses."""
        result = {
            "error": self.reason,
            "message": self.message,
            "needs_auth": self.needs_auth,
            "context": self.context,
        }
        if self.original_error:
            result["original_error"] = str(self.original_error)
        return result


# =============================================================================
# MercadoLibre Authentication Errors
# =============================================================================

class MeliAuthError(SellerOpsError):
    """The seller must (re)connect their MercadoLibre account."""

    reason = "NO_AUTHENTICATION"
    status_code = 401
    needs_auth = True


class NoAuthenticationError(MeliAuthError):
    reason = "NO_AUTHENTICATION"

    def __init__(self, message: str = "No MercadoLibre tokens stored", **kwargs):
        super().__init__(message, **kwargs)


class SessionExpiredError(MeliAuthError):
    reason = "SESSION_EXPIRED"

    def __init__(self, message: str = "Session expired, please reconnect", **kwargs):
        super().__init__(message, **kwargs)


class RefreshFailedError(MeliAuthError):
    """Token endpoint rejected a refresh."""

    reason = "REFRESH_FAILED"

    def __init__(
        self,
        message: str = "Failed to refresh MercadoLibre token",
        upstream_status: Optional[int] = None,
        **kwargs,
    ):
        super().__init__(message, **kwargs)
        self.upstream_status = upstream_status
        if upstream_status is not None:
            self.context["upstream_status"] = upstream_status
        self.context["needs_reauth"] = self.needs_reauth

    @property
    def needs_reauth(self) -> bool:
        text = f"{self.message} {self.original_error or ''}".lower()
        return "invalid_grant" in text or "expired" in text


class InvalidTokenError(MeliAuthError):
    reason = "INVALID_TOKEN"


class InsufficientPermissionsError(MeliAuthError):
    reason = "INSUFFICIENT_PERMISSIONS"
    status_code = 403


class MissingCredentialsError(SellerOpsError):
    """OAuth client id/secret are not configured."""

    reason = "MISSING_CREDENTIALS"
    status_code = 500

    def __init__(self, message: str = "MercadoLibre credentials not configured", **kwargs):
        super().__init__(message, **kwargs)


# =============================================================================
# Upstream Errors
# =============================================================================

class MeliAPIError(SellerOpsError):
    """MercadoLibre API call failure."""

    reason = "MERCADOLIBRE_API_ERROR"
    status_code = 502

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        upstream_status: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        context: Dict[str, Any] = {}
        if endpoint:
            context["endpoint"] = endpoint
        if upstream_status is not None:
            context["upstream_status"] = upstream_status
        super().__init__(message, context, original_error)
        self.upstream_status = upstream_status


class NotFoundError(MeliAPIError):
    reason = "NOT_FOUND"
    status_code = 404


class RateLimitedError(MeliAPIError):
    reason = "RATE_LIMITED"
    status_code = 429


class DatabaseError(SellerOpsError):
    """Hosted database (PostgREST) request failure."""

    reason = "DATABASE_ERROR"
    status_code = 503

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[str] = None,
        hint: Optional[str] = None,
        relation: Optional[str] = None,
        original_error: Optional[Exception] = None,
    ):
        context: Dict[str, Any] = {}
        if code:
            context["code"] = code
        if details:
            context["details"] = details
        if hint:
            context["hint"] = hint
        if relation:
            context["relation"] = relation
        super().__init__(message, context, original_error)
        self.code = code

    @property
    def is_unique_violation(self) -> bool:
        return self.code == "23505"


# =============================================================================
# Request Errors
# =============================================================================

class ValidationError(SellerOpsError):
    """Input validation failure."""

    reason = "VALIDATION_ERROR"
    status_code = 400

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None
    ):
        context = {}
        if field:
            context["field"] = field
        if value is not None:
            context["value"] = str(value)[:100]
        super().__init__(message, context)


class UnauthorizedError(SellerOpsError):
    reason = "UNAUTHORIZED"
    status_code = 401

    def __init__(self, message: str = "Authentication required", **kwargs):
        super().__init__(message, **kwargs)


class ForbiddenError(SellerOpsError):
    reason = "FORBIDDEN"
    status_code = 403

    def __init__(self, message: str = "Admin role required", **kwargs):
        super().__init__(message, **kwargs)


class OrganizationRequiredError(SellerOpsError):
    """User has no organization membership yet and must onboard."""

    reason = "ORGANIZATION_REQUIRED"
    status_code = 403

    def __init__(self, message: str = "User has no organization", **kwargs):
        super().__init__(message, **kwargs)
