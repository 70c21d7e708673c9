"""Error taxonomy shared by the dispatch engine.

Job-level failures are recorded against the job and surfaced through the
dead-letter/ops endpoints; only `ValidationError` is ever raised back to a
caller of the ingestion API.
"""


class NotificationError(Exception):
    """Base class for every error raised by notifyhub."""


class ConfigurationError(NotificationError):
    """Missing or ambiguous configuration; fatal for the job, never retried."""


class TemplateError(ConfigurationError):
    """Rendering could not produce a message."""


class TemplateNotFoundError(TemplateError):
    def __init__(self, tenant_id: str, channel: str, template_name: str) -> None:
        super().__init__(
            f"no active default template tenant={tenant_id} channel={channel} name={template_name}"
        )
        self.tenant_id = tenant_id
        self.channel = channel
        self.template_name = template_name


class AmbiguousTemplateError(TemplateError):
    def __init__(self, tenant_id: str, channel: str, template_name: str, count: int) -> None:
        super().__init__(
            f"{count} active default templates tenant={tenant_id} channel={channel} name={template_name}"
        )
        self.count = count


class MissingVariableError(TemplateError):
    """A required template variable was not supplied."""

    def __init__(self, missing: list[str]) -> None:
        self.missing = sorted(missing)
        self.variable = self.missing[0]
        super().__init__(f"missing required variable: {self.variable}")


class ProviderError(NotificationError):
    """Transport failure raised inside an adapter and mapped to a send result."""

    error_kind = "TRANSIENT"

    def __init__(self, detail: str, retry_after: float | None = None) -> None:
        super().__init__(detail)
        self.detail = detail
        self.retry_after = retry_after


class TransientProviderError(ProviderError):
    error_kind = "TRANSIENT"


class RateLimitedError(TransientProviderError):
    error_kind = "RATE_LIMITED"


class PermanentProviderError(ProviderError):
    error_kind = "PERMANENT"


class ProviderAuthenticationError(ProviderError):
    error_kind = "UNAUTHENTICATED"


class AuthenticationError(NotificationError):
    """Inbound callback failed its authenticity check."""


class MalformedCallbackError(NotificationError):
    """Inbound callback payload could not be decoded."""


class ValidationError(NotificationError):
    """Malformed request rejected synchronously to the caller."""


class LeaseLostError(NotificationError):
    """A worker tried to complete a job it no longer holds the lease for."""


class InvalidTransitionError(NotificationError, ValueError):
    """Job status transition not allowed by the state machine."""
