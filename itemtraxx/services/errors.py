from __future__ import annotations


class AdminOpsError(RuntimeError):
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class Unauthorized(AdminOpsError):
    status_code = 401
    default_message = "Unauthorized"


class AccessDenied(AdminOpsError):
    status_code = 403
    default_message = "Access denied"


class RateLimited(AdminOpsError):
    status_code = 429
    default_message = "Rate limit exceeded, please try again in a minute."

    def __init__(self, retry_after_seconds: int, message: str | None = None):
        self.retry_after_seconds = max(1, int(retry_after_seconds))
        super().__init__(message)


class InvalidRequest(AdminOpsError):
    default_message = "Invalid request"


class InvalidPolicy(AdminOpsError):
    default_message = "Invalid due time limit."


class InvalidBatchSize(AdminOpsError):
    default_message = "Provide between 1 and 1000 rows."


class UpstreamFailure(AdminOpsError):
    default_message = "Request failed"


class ProviderNotConfigured(AdminOpsError):
    status_code = 500
    default_message = "Email provider is not configured. Set ITX_RESEND_API_KEY to send reminders."


class ServerMisconfigured(AdminOpsError):
    status_code = 500
    default_message = "Server misconfiguration"


class RateLimitUnavailable(AdminOpsError):
    status_code = 500
    default_message = "Rate limit check failed"
