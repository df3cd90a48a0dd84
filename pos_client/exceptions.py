class ApiError(Exception):
    """A request to the pharmacy API did not succeed"""

    def __init__(self, message, status_code=None, payload=None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.payload = payload or {}


class SessionExpired(ApiError):
    """The server closed the session for inactivity (401 SESSION_TIMEOUT)"""


class AuthenticationError(ApiError):
    """401 without the timeout code: bad or revoked credential, not idleness"""


class ValidationError(ApiError):
    """422 with field level errors, passed through as the server sent them"""

    @property
    def errors(self):
        return self.payload.get('errors', {})


class ServerError(ApiError):
    """5xx from the server"""


class NetworkError(ApiError):
    """No usable response: timeout, refused connection, DNS failure"""
