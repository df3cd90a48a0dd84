"""
HTTP client for the pharmacy POS API.

Every outgoing call carries the bearer token and the time of the previous
call in ``X-Last-Activity``; the stored value is then moved to "now", so
the server measures the real gap between calls rather than a timestamp the
client just made up. Responses drive the logout flow: a 401 with
``SESSION_TIMEOUT`` clears credentials and redirects to login once, any
other 401 is only logged.

Usage:
    client = ApiClient('http://127.0.0.1:8000/api/v1', storage=FileStorage(),
                       navigate=window.open_login)
    client.login('cashier', 'secret')
    products = client.get('/products/')
"""
import datetime
import logging

import requests

from .exceptions import (
    ApiError, SessionExpired, AuthenticationError, ValidationError,
    ServerError, NetworkError,
)
from .session import (
    LogoutCoordinator, InactivityTracker,
    REASON_INACTIVITY, REASON_SESSION_TIMEOUT, REASON_LOGOUT,
)
from .storage import (
    MemoryStorage, AUTH_TOKEN_KEY, REFRESH_TOKEN_KEY, LAST_ACTIVITY_KEY,
    SERVER_LAST_ACTIVITY_KEY, SERVER_TIME_REMAINING_KEY,
)

logger = logging.getLogger(__name__)

LAST_ACTIVITY_HEADER = 'X-Last-Activity'
TIMEOUT_HEADER = 'X-Session-Timeout'
SERVER_LAST_ACTIVITY_HEADER = 'X-Session-Last-Activity'
TIME_REMAINING_HEADER = 'X-Session-Time-Remaining'
SESSION_TIMEOUT_ERROR_CODE = 'SESSION_TIMEOUT'

DEFAULT_TIMEOUT = 15  # seconds


def utc_now_iso():
    return datetime.datetime.now(datetime.timezone.utc).isoformat().replace('+00:00', 'Z')


class ApiClient:

    def __init__(self, base_url, storage=None, timeout=DEFAULT_TIMEOUT, login_url='/auth/login',
                 navigate=None, tracker=None, on_warning=None, session=None,
                 inactivity_timeout_minutes=60, warning_minutes=5):
        self.base_url = base_url.rstrip('/')
        self.storage = storage if storage is not None else MemoryStorage()
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({
            'Content-Type': 'application/json',
            'Accept': 'application/json',
            'X-Requested-With': 'XMLHttpRequest',
        })
        self.tracker = tracker or InactivityTracker(
            timeout_minutes=inactivity_timeout_minutes,
            warning_minutes=warning_minutes,
            on_warning=on_warning,
        )
        if self.tracker.on_timeout is None:
            self.tracker.on_timeout = self._on_local_timeout
        self.coordinator = LogoutCoordinator(
            self.storage,
            navigate=navigate,
            login_url=login_url,
            on_logout=self._on_logout,
        )

    # Authentication

    def login(self, username, password):
        # Leftovers of an earlier session must not ride along on the login call
        self.storage.remove(AUTH_TOKEN_KEY)
        self.storage.remove(LAST_ACTIVITY_KEY)
        self.session.cookies.clear()
        data = self.post('/auth/login/', json={'username': username, 'password': password})
        self.set_auth_token(data['access'], data.get('refresh'))
        return data

    def logout(self):
        """Tell the server, then log out locally whatever the outcome"""
        try:
            if self.is_authenticated():
                self.post('/auth/logout/')
        except ApiError as e:
            logger.warning(f"Server logout failed, logging out locally: {e}")
        finally:
            self.coordinator.logout(REASON_LOGOUT)

    def set_auth_token(self, access, refresh=None):
        self.storage.set(AUTH_TOKEN_KEY, access)
        if refresh:
            self.storage.set(REFRESH_TOKEN_KEY, refresh)
        # A stale timestamp from a previous session would expire the new one
        self.storage.set(LAST_ACTIVITY_KEY, utc_now_iso())
        self.coordinator.reset()
        self.tracker.start()

    def get_auth_token(self):
        return self.storage.get(AUTH_TOKEN_KEY)

    def is_authenticated(self):
        return bool(self.get_auth_token())

    def extend_session(self):
        """The "stay signed in" action of the inactivity warning"""
        self.tracker.touch()
        return self.get('/auth/session/')

    def record_activity(self):
        """Call on user input (key press, scan, click)"""
        self.tracker.touch()

    def close(self):
        self.tracker.stop()
        self.session.close()

    # HTTP verbs

    def get(self, path, **kwargs):
        return self.request('GET', path, **kwargs)

    def post(self, path, **kwargs):
        return self.request('POST', path, **kwargs)

    def put(self, path, **kwargs):
        return self.request('PUT', path, **kwargs)

    def patch(self, path, **kwargs):
        return self.request('PATCH', path, **kwargs)

    def delete(self, path, **kwargs):
        return self.request('DELETE', path, **kwargs)

    def request(self, method, path, **kwargs):
        url = f"{self.base_url}/{path.lstrip('/')}"
        headers = self._prepare_headers(kwargs.pop('headers', None))
        kwargs.setdefault('timeout', self.timeout)
        logger.debug(f"API Request: {method} {url}")
        try:
            response = self.session.request(method, url, headers=headers, **kwargs)
        except requests.exceptions.Timeout as e:
            logger.warning(f"API timeout on {method} {url}: {e}")
            raise NetworkError(f"Request timed out: {method} {url}") from e
        except requests.exceptions.RequestException as e:
            # No response at all: the server may or may not have seen the call
            logger.warning(f"Network failure on {method} {url}: {e}")
            raise NetworkError(f"Network failure: {method} {url}") from e
        return self._handle_response(response)

    # Interceptors

    def _prepare_headers(self, extra=None):
        headers = dict(extra or {})
        token = self.get_auth_token()
        if token:
            headers['Authorization'] = f'Bearer {token}'
        now_iso = utc_now_iso()
        try:
            headers[LAST_ACTIVITY_HEADER] = self.storage.get(LAST_ACTIVITY_KEY) or now_iso
            self.storage.set(LAST_ACTIVITY_KEY, now_iso)
        except OSError as e:
            logger.warning(f"Client storage unavailable, sending current time as activity: {e}")
            headers[LAST_ACTIVITY_HEADER] = now_iso
        return headers

    def _handle_response(self, response):
        payload = self._parse_json(response)
        status = response.status_code

        if response.ok:
            logger.debug(f"API Response: {status}")
            self._record_telemetry(response)
            return payload

        body = payload if isinstance(payload, dict) else {}
        message = body.get('message') or body.get('detail') or response.reason or f"HTTP {status}"

        if status == 401:
            if body.get('error_code') == SESSION_TIMEOUT_ERROR_CODE:
                logger.warning("Session expired on the server - clearing credentials and redirecting to login")
                self.coordinator.logout(REASON_SESSION_TIMEOUT)
                raise SessionExpired(message, status, body)
            logger.warning("API authentication error - token may be invalid")
            raise AuthenticationError(message, status, body)

        if status == 422:
            logger.warning(f"Validation error: {body.get('errors')}")
            raise ValidationError(message, status, body)

        if status >= 500:
            logger.error(f"Server error {status}: {message}")
            raise ServerError(message, status, body)

        raise ApiError(message, status, body)

    def _record_telemetry(self, response):
        headers = response.headers
        try:
            if SERVER_LAST_ACTIVITY_HEADER in headers:
                self.storage.set(SERVER_LAST_ACTIVITY_KEY, headers[SERVER_LAST_ACTIVITY_HEADER])
            if TIME_REMAINING_HEADER in headers:
                self.storage.set(SERVER_TIME_REMAINING_KEY, int(headers[TIME_REMAINING_HEADER]))
        except (OSError, ValueError) as e:
            logger.warning(f"Could not record session telemetry: {e}")
        if TIMEOUT_HEADER in headers:
            try:
                self.tracker.set_timeout(int(headers[TIMEOUT_HEADER]))
            except ValueError:
                logger.warning(f"Ignoring malformed {TIMEOUT_HEADER} header: {headers[TIMEOUT_HEADER]!r}")

    @staticmethod
    def _parse_json(response):
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError:
            return {'message': response.text[:200]}

    # Logout hooks

    def _on_local_timeout(self):
        self.coordinator.logout(REASON_INACTIVITY)

    def _on_logout(self, reason):
        self.tracker.stop()
        # The server session cookie carries the old idle clock
        self.session.cookies.clear()
