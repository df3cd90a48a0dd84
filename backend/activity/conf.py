"""
Settings and wire constants for the session activity tracker.
"""
from django.conf import settings

DEFAULT_TIMEOUT_MINUTES = 60
DEFAULT_CACHE_PADDING_MINUTES = 10

SESSION_KEY = 'last_activity'
CACHE_KEY_PREFIX = 'user_activity:'

# Inbound header carrying the client's previous activity timestamp
LAST_ACTIVITY_HEADER = 'X-Last-Activity'
LAST_ACTIVITY_META_KEY = 'HTTP_X_LAST_ACTIVITY'

# Informational response headers
TIMEOUT_HEADER = 'X-Session-Timeout'
EVALUATED_AT_HEADER = 'X-Session-Last-Activity'
REMAINING_HEADER = 'X-Session-Time-Remaining'

SESSION_TIMEOUT_ERROR_CODE = 'SESSION_TIMEOUT'
SESSION_TIMEOUT_MESSAGE = 'Session expired due to inactivity'


def get_timeout_minutes():
    """Inactivity budget in minutes, read fresh on every evaluation"""
    return int(getattr(settings, 'SESSION_INACTIVITY_TIMEOUT', DEFAULT_TIMEOUT_MINUTES))


def get_cache_ttl_seconds(timeout_minutes):
    padding = int(getattr(settings, 'SESSION_ACTIVITY_CACHE_PADDING', DEFAULT_CACHE_PADDING_MINUTES))
    return (timeout_minutes + padding) * 60


def get_cache_key(principal_id):
    return f"{CACHE_KEY_PREFIX}{principal_id}"
