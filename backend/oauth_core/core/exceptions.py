"""
Error taxonomy for the OAuth token lifecycle.

Every error carries a ``user_message`` that is safe to show to end users:
reauthorization and invalid-state errors tell the user to reconnect the
tool, transient errors never include provider response bodies.
"""


class OAuthCoreError(Exception):
    """Base class for all token lifecycle errors."""

    user_message = "Something went wrong with this connection. Please try again."

    def __init__(self, message: str, *, provider: str | None = None):
        self.provider = provider
        super().__init__(message)


class ConfigurationError(OAuthCoreError):
    """Missing or invalid encryption key or provider credentials. Fatal at startup."""

    user_message = "This integration is not configured on the server."


class UnknownProviderError(OAuthCoreError, ValueError):
    """Provider or group is unknown or has no credentials configured."""

    user_message = "This tool is not available."

    def __init__(self, provider: str):
        super().__init__(
            f"Unknown provider or missing configuration: {provider}",
            provider=provider,
        )


class InvalidStateError(OAuthCoreError):
    """
    Authorization state is missing, expired, forged or already consumed.

    All of these are the same outcome: the user must restart authorization.
    """

    user_message = "This connection attempt expired or was already used. Please reconnect this tool."


class ReauthorizationRequired(OAuthCoreError):
    """The provider permanently rejected the stored grant. Never retried."""

    user_message = "Access to this tool was revoked or has expired. Please reconnect this tool."

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        error_code: str | None = None,
    ):
        self.error_code = error_code
        super().__init__(message, provider=provider)


# Name used throughout the design docs for the same condition
PermanentAuthFailure = ReauthorizationRequired


class IntegrationNotFoundError(ReauthorizationRequired):
    """No active integration exists for the (user, provider) pair."""

    user_message = "This tool is not connected. Please connect this tool."

    def __init__(self, user_id: str, provider: str):
        self.user_id = user_id
        super().__init__(
            f"No active integration for user {user_id} and provider {provider}",
            provider=provider,
        )


class TransientFailure(OAuthCoreError):
    """Provider unavailable or rate limited after retries. Caller may retry later."""

    user_message = "The tool is temporarily unavailable. Please try again later."

    def __init__(
        self,
        message: str,
        *,
        provider: str | None = None,
        attempts: int = 0,
    ):
        self.attempts = attempts
        super().__init__(message, provider=provider)


class LockContentionError(TransientFailure):
    """Another process holds the refresh lock and the re-read still shows a stale token."""
