"""Error taxonomy shared by chat services and the API boundary."""


class ChatError(Exception):
    """Base error carrying a stable code and the HTTP status it maps to."""

    code = "INTERNAL_SERVER_ERROR"
    status_code = 500
    default_message = "Internal server error"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationFailedError(ChatError):
    """Bad or missing fields. Rejected before any side effect."""

    code = "MISSING_REQUIRED_FIELDS"
    status_code = 400
    default_message = "Missing required fields"


class ForbiddenError(ChatError):
    """A user tried to act on behalf of someone else."""

    code = "FORBIDDEN"
    status_code = 403
    default_message = "You can only act as yourself"


class MessageNotFoundError(ChatError):
    """Message does not exist or is not owned by the caller."""

    code = "MESSAGE_NOT_FOUND"
    status_code = 404
    default_message = "Message not found"


class ConfigurationError(ChatError):
    """Invalid configuration that could not be failed open."""

    code = "AI_SERVICE_UNAVAILABLE"
    status_code = 500
    default_message = "AI service not configured"


class SendFailedError(ChatError):
    """A send attempt did not reach the server or was rejected. Retryable."""

    code = "MESSAGE_SEND_FAILED"
    status_code = 500
    default_message = "Failed to send message"


class SearchQuotaExceededError(ChatError):
    """The web search provider reported quota or rate-limit exhaustion."""

    code = "SEARCH_QUOTA_EXCEEDED"
    status_code = 503
    default_message = "Web search quota exceeded"
