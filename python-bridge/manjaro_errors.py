"""
Structured errors for the Manjaro bridge. Every error carries a stable `code`
that the bridge server hands back to the caller as { ok: false, code, message }.
"""


class ManjaroError(Exception):
    """Base error; `code` is a stable machine-readable tag."""

    code = "MANJARO_ERROR"

    def __init__(self, message: str, status_code: int | None = None, code: str | None = None):
        self.message = message
        self.status_code = status_code
        if code:
            self.code = code
        super().__init__(message)


class ProtocolError(ManjaroError):
    """Expected page structure or tokens are missing; the backend probably changed."""

    code = "PROTOCOL_ERROR"


class AuthStateError(ManjaroError):
    """A login step was called out of order."""

    code = "INVALID_AUTH_STATE"


class ChallengeRejected(ManjaroError):
    code = "CAPTCHA_REJECTED"


class AuthenticationFailed(ManjaroError):
    code = "LOGIN_FAILED"

    def __init__(self, message: str, body: str = "", status_code: int | None = None):
        super().__init__(message, status_code)
        self.body = body


class TransientBackendError(ManjaroError):
    """Short or malformed read response. Retried by the poller, only raised when a retry cap is set."""

    code = "BACKEND_UNSTABLE"


class PollCancelled(ManjaroError):
    code = "CANCELLED"


class ResolutionUnavailable(ManjaroError):
    """Language model unreachable or its answer unusable. Always recovered by keyword fallback."""

    code = "LLM_UNAVAILABLE"


class SubmissionRejected(ManjaroError):
    code = "SUBMISSION_REJECTED"

    def __init__(self, message: str, body: str = "", status_code: int | None = None):
        super().__init__(message, status_code)
        self.body = body


class FetchError(ManjaroError):
    """Source page could not be fetched."""

    code = "FETCH_FAILED"


class RunAlreadyActive(ManjaroError):
    code = "TASK_RUNNING"
