"""
Client side session lifecycle: the local inactivity countdown and the
logout flow shared by local expiry and server rejections.
"""
import logging
import threading
import time
from urllib.parse import urlencode

from .storage import (
    SENSITIVE_KEYS, LAST_ACTIVITY_KEY,
    SERVER_LAST_ACTIVITY_KEY, SERVER_TIME_REMAINING_KEY,
)

logger = logging.getLogger(__name__)

REASON_INACTIVITY = 'inactivity'
REASON_SESSION_TIMEOUT = 'session_timeout'
REASON_LOGOUT = 'logout'

LOGOUT_MESSAGES = {
    REASON_INACTIVITY: 'You have been signed out due to inactivity',
    REASON_SESSION_TIMEOUT: 'Your session expired due to inactivity',
}


class LogoutCoordinator:
    """
    Clears local credentials and sends the user to the login page.

    Only the first ``logout()`` after a login does anything; the local
    countdown and a burst of concurrent 401 responses can all call it and
    the user is redirected exactly once. ``reset()`` re-arms it after the
    next successful login.
    """

    def __init__(self, storage, navigate=None, login_url='/auth/login', on_logout=None):
        self.storage = storage
        self.navigate = navigate
        self.login_url = login_url
        self.on_logout = on_logout
        self._lock = threading.Lock()
        self._logged_out = False

    @property
    def logged_out(self):
        return self._logged_out

    def reset(self):
        with self._lock:
            self._logged_out = False

    def logout(self, reason=REASON_LOGOUT):
        """Returns True if this call performed the logout, False if it was a no-op"""
        with self._lock:
            if self._logged_out:
                logger.debug(f"Logout ({reason}) ignored, already logged out")
                return False
            self._logged_out = True

        logger.warning(f"Logging out: {reason}")
        for key in SENSITIVE_KEYS + (LAST_ACTIVITY_KEY, SERVER_LAST_ACTIVITY_KEY, SERVER_TIME_REMAINING_KEY):
            try:
                self.storage.remove(key)
            except OSError as e:
                logger.error(f"Could not clear '{key}' from client storage: {e}")

        if self.on_logout:
            self.on_logout(reason)
        if self.navigate:
            self.navigate(self.login_redirect_url(reason))
        return True

    def login_redirect_url(self, reason):
        message = LOGOUT_MESSAGES.get(reason)
        if not message:
            return self.login_url
        return f"{self.login_url}?{urlencode({'reason': reason, 'message': message})}"


class InactivityTracker:
    """
    Local idle countdown, independent from server responses.

    ``touch()`` is called on user input and restarts the countdown. Once the
    idle time reaches ``timeout - warning`` the ``on_warning`` callback runs
    (once per idle period); at the full timeout ``on_timeout`` runs. The
    server stays authoritative: this only logs the user out early.

    Timer callbacks run on a background thread. ``stop()`` must be called
    when the authenticated UI goes away so no timer fires after logout.
    """

    def __init__(self, timeout_minutes=60, warning_minutes=5, on_warning=None, on_timeout=None,
                 clock=time.monotonic, timer_factory=threading.Timer):
        self.timeout_seconds = timeout_minutes * 60
        self.warning_seconds = warning_minutes * 60
        self.on_warning = on_warning
        self.on_timeout = on_timeout
        self.clock = clock
        self.timer_factory = timer_factory
        self._lock = threading.Lock()
        self._timers = []
        self._active = False
        self._last_activity = clock()
        self._warned = False
        self._expired = False

    @property
    def active(self):
        return self._active

    def start(self):
        with self._lock:
            self._active = True
        self.touch()

    def stop(self):
        with self._lock:
            self._active = False
            self._cancel_timers()

    def touch(self):
        """Record user activity and restart the countdown"""
        with self._lock:
            if not self._active:
                return
            self._last_activity = self.clock()
            self._warned = False
            self._expired = False
            self._schedule()

    def set_timeout(self, seconds):
        """Adopt the server's budget (X-Session-Timeout) without resetting idle time"""
        seconds = int(seconds)
        with self._lock:
            if seconds <= 0 or seconds == self.timeout_seconds:
                return
            logger.info(f"Inactivity timeout set to {seconds}s by server")
            self.timeout_seconds = seconds
            if self._active:
                self._schedule()

    def idle_seconds(self):
        return max(0.0, self.clock() - self._last_activity)

    def time_until_logout(self):
        if not self._active:
            return float('inf')
        return max(0.0, self.timeout_seconds - self.idle_seconds())

    def should_show_warning(self):
        if not self._active:
            return False
        remaining = self.time_until_logout()
        return 0 < remaining <= self.warning_seconds

    def check(self):
        """Fire whichever threshold has been crossed. Called by the timers."""
        fire_warning = fire_timeout = False
        with self._lock:
            if not self._active or self._expired:
                return
            idle = self.idle_seconds()
            if idle >= self.timeout_seconds:
                self._expired = True
                self._active = False
                self._cancel_timers()
                fire_timeout = True
            elif idle >= self.timeout_seconds - self.warning_seconds and not self._warned:
                self._warned = True
                fire_warning = True

        if fire_timeout:
            logger.warning(f"Automatic logout after {self.timeout_seconds // 60} minutes of inactivity")
            if self.on_timeout:
                self.on_timeout()
        elif fire_warning:
            logger.info("Inactivity warning - session is about to expire")
            if self.on_warning:
                self.on_warning(self.time_until_logout())

    def _schedule(self):
        # Caller holds the lock
        self._cancel_timers()
        remaining = self.timeout_seconds - self.idle_seconds()
        warning_delay = remaining - self.warning_seconds
        if warning_delay > 0 and self.warning_seconds > 0:
            self._timers.append(self._start_timer(warning_delay))
        self._timers.append(self._start_timer(max(0.0, remaining)))

    def _start_timer(self, delay):
        timer = self.timer_factory(delay, self.check)
        timer.daemon = True
        timer.start()
        return timer

    def _cancel_timers(self):
        for timer in self._timers:
            timer.cancel()
        self._timers = []
