# compliance_tracker/shared/exceptions.py
from fastapi import HTTPException, status


# Integration Exceptions
class IntegrationError(HTTPException):
    """Base class for accounting integration failures.

    Every subclass carries a stable ``code`` so callers (and the OAuth
    callback redirect) can branch on the failure kind without parsing text.
    """

    code = "INTEGRATION_ERROR"
    default_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Integration request failed"

    def __init__(
        self,
        message: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        super().__init__(
            status_code=self.default_status,
            detail=message or self.default_message,
            headers=headers,
        )

    @property
    def message(self) -> str:
        return str(self.detail)

    def __str__(self) -> str:
        return f"{self.code}: {self.detail}"


class InvalidStateError(IntegrationError):
    code = "INVALID_STATE"
    default_status = status.HTTP_400_BAD_REQUEST
    default_message = "OAuth state did not match the pending authorization"


class AuthExchangeFailedError(IntegrationError):
    code = "AUTH_EXCHANGE_FAILED"
    default_status = status.HTTP_401_UNAUTHORIZED
    default_message = "Failed to exchange authorization code for tokens"


class RefreshTokenInvalidError(IntegrationError):
    code = "REFRESH_TOKEN_INVALID"
    default_status = status.HTTP_401_UNAUTHORIZED
    default_message = "Refresh token is invalid or expired; reconnect required"


class AuthenticationFailedError(IntegrationError):
    code = "AUTHENTICATION_FAILED"
    default_status = status.HTTP_401_UNAUTHORIZED
    default_message = "Authentication with the accounting provider failed"


class RateLimitExceededError(IntegrationError):
    code = "RATE_LIMIT_EXCEEDED"
    default_status = status.HTTP_429_TOO_MANY_REQUESTS
    default_message = "Accounting provider rate limit exceeded"

    def __init__(self, retry_after: int = 60, message: str | None = None) -> None:
        self.retry_after = retry_after
        super().__init__(
            message or f"Rate limit exceeded: retry after {retry_after} seconds",
            headers={"Retry-After": str(retry_after)},
        )


class ProviderError(IntegrationError):
    code = "PROVIDER_ERROR"
    default_status = status.HTTP_502_BAD_GATEWAY
    default_message = "Accounting provider request failed"

    def __init__(
        self, message: str | None = None, provider_status: int | None = None
    ) -> None:
        self.provider_status = provider_status
        super().__init__(message)


class NotConnectedError(IntegrationError):
    code = "NOT_CONNECTED"
    default_status = status.HTTP_404_NOT_FOUND
    default_message = "QuickBooks not connected for this organization"


class CustomerNotMappedError(IntegrationError):
    code = "CUSTOMER_NOT_MAPPED"
    default_status = status.HTTP_400_BAD_REQUEST
    default_message = "QuickBooks customer not mapped for this organization"


class IntegrationConfigurationError(IntegrationError):
    code = "NOT_CONFIGURED"
    default_status = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = (
        "QuickBooks OAuth credentials not configured. Set QB_CLIENT_ID and "
        "QB_CLIENT_SECRET environment variables or configure in Admin panel."
    )
