from __future__ import annotations

from typing import Any


_USER_MESSAGES: dict[str, str] = {
    "INTERCOM_RATE_LIMIT": "Intercom is rate limiting requests. Please try again in a few minutes.",
    "INTERCOM_AUTH_FAILED": "Your Intercom connection has expired. Please reconnect your account.",
    "INTERCOM_NOT_CONNECTED": "Connect your Intercom workspace to continue.",
    "INSUFFICIENT_TICKETS": "Not enough tickets to generate insights yet.",
    "ANALYSIS_QUOTA_EXCEEDED": "You have reached your analysis limit for this billing period.",
    "TRIAL_LIMIT_EXCEEDED": "You have reached a trial limit. Upgrade to keep going.",
    "PAYMENT_FAILED": "Your payment could not be processed. Please update your billing details.",
    "NETWORK_ERROR": "A network error occurred. Please try again.",
    "DATABASE_ERROR": "A database error occurred. Please try again later.",
    "LLM_ERROR": "AI analysis is temporarily unavailable.",
}


def user_message(code: str) -> str:
    # Map stable error codes to copy that is safe to show customers.
    return _USER_MESSAGES.get(code, "An unexpected error occurred. Please try again.")


class SupportIQError(Exception):
    """Base error for SupportIQ."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        context: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        self.context = context or {}


class ProviderConfigError(SupportIQError):
    """Missing or invalid provider configuration."""

    code = "PROVIDER_CONFIG_ERROR"
    status_code = 503


class LLMError(SupportIQError):
    """LLM completion request failure."""

    code = "LLM_ERROR"
    status_code = 502


class EmbeddingError(SupportIQError):
    """Embedding request failure."""

    code = "EMBEDDING_ERROR"
    status_code = 502


class IntercomError(SupportIQError):
    """Intercom API request failure."""

    code = "INTERCOM_ERROR"
    status_code = 502


class IntercomAuthError(IntercomError):
    """Intercom authentication/authorization failure."""

    code = "INTERCOM_AUTH_FAILED"
    status_code = 401


class IntercomRateLimitError(IntercomError):
    """Intercom rejected the request with a rate limit."""

    code = "INTERCOM_RATE_LIMIT"
    status_code = 429


class WebhookSignatureError(SupportIQError):
    """Webhook signature missing or invalid."""

    code = "INVALID_SIGNATURE"
    status_code = 401


class TrialLimitExceededError(SupportIQError):
    """Trial usage limit reached for an operation."""

    code = "TRIAL_LIMIT_EXCEEDED"
    status_code = 402


class DatabaseError(SupportIQError):
    """Database layer failure."""

    code = "DATABASE_ERROR"
    status_code = 500
