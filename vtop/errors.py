"""
Error taxonomy for portal operations.

Every error carries a stable machine-readable ``code``, a short
human-readable message and an HTTP-style status that glue code can hand
straight back to a browser. ``retryable`` drives the client's retry loop;
``requires_reauth`` tells callers to throw the stored session away.
"""

import requests


class VtopError(Exception):
    code = "VTOP_ERROR"
    http_status = 502
    default_message = "VTOP returned an error. Please try again."
    retryable = False
    requires_reauth = False

    def __init__(self, message=None, original=None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.original = original

    def to_dict(self):
        return {"code": self.code, "message": self.message}

    @classmethod
    def from_exception(cls, error):
        """Map any exception onto the taxonomy."""
        if isinstance(error, VtopError):
            return error
        if isinstance(error, requests.exceptions.Timeout):
            return UpstreamTimeout(original=error)
        if isinstance(error, requests.exceptions.ConnectionError):
            return UpstreamUnavailable(original=error)
        if isinstance(error, requests.exceptions.RequestException):
            return UpstreamError(str(error), original=error)

        text = str(error).lower()
        if "session expired" in text or text == "session_expired":
            return SessionExpired(original=error)
        if "captcha" in text:
            return InvalidCaptcha(original=error)
        if "credentials" in text or "invalid password" in text or "invalid user" in text:
            return InvalidCredentials(original=error)
        if "timed out" in text or "timeout" in text:
            return UpstreamTimeout(original=error)
        if "registration" in text:
            return MissingIdentity(original=error)
        return UpstreamError(str(error) or None, original=error)


class SessionExpired(VtopError):
    code = "SESSION_EXPIRED"
    http_status = 401
    default_message = "Your session has expired. Please log in again."
    requires_reauth = True


class Unauthorized(VtopError):
    code = "UNAUTHORIZED"
    http_status = 401
    default_message = "Not authenticated. Please log in."
    requires_reauth = True


class InvalidCaptcha(VtopError):
    code = "INVALID_CAPTCHA"
    http_status = 400
    default_message = "Invalid CAPTCHA. Please try again."


class InvalidCredentials(VtopError):
    code = "INVALID_CREDENTIALS"
    http_status = 401
    default_message = "Invalid username or password."


class AccountLocked(VtopError):
    code = "ACCOUNT_LOCKED"
    http_status = 403
    default_message = "Account is locked or disabled."


class LoginFailed(VtopError):
    code = "LOGIN_FAILED"
    http_status = 401
    default_message = "Login failed. Please check your credentials and try again."


class MissingIdentity(VtopError):
    code = "MISSING_REGISTRATION"
    http_status = 400
    default_message = "Registration number is required."


class InvalidInput(VtopError):
    code = "VALIDATION_ERROR"
    http_status = 400
    default_message = "Invalid request parameters."


class UpstreamError(VtopError):
    retryable = True


class UpstreamTimeout(UpstreamError):
    code = "TIMEOUT"
    http_status = 504
    default_message = "Request timed out. Please try again."


class UpstreamUnavailable(UpstreamError):
    code = "NETWORK_ERROR"
    http_status = 503
    default_message = "Could not connect to VTOP. Please try again."


class ParseFailure(VtopError):
    code = "PARSE_ERROR"
    http_status = 500
    default_message = "Failed to parse VTOP response."


class CaptchaParseFailure(ParseFailure):
    default_message = "Failed to parse CAPTCHA image from response."


LOGIN_ERRORS = {
    InvalidCaptcha.code: InvalidCaptcha,
    InvalidCredentials.code: InvalidCredentials,
    AccountLocked.code: AccountLocked,
    LoginFailed.code: LoginFailed,
}


def requires_reauth(error):
    """True when the stored session must be discarded before retrying."""
    if isinstance(error, VtopError):
        return error.requires_reauth
    if isinstance(error, Exception):
        text = str(error).lower()
        return text == "session_expired" or "session expired" in text
    return False
