"""
Last-activity persistence.

Reads walk an explicit, ordered list of sources and stop at the first one
that yields a timestamp:

    1. the server-side session (``request.session['last_activity']``)
    2. the client supplied ``X-Last-Activity`` header
    3. the cache entry ``user_activity:<id>`` (bearer callers only)

When none of them has a value the caller is on first contact and the read
returns "now", so a brand new session is never expired on its first request.

Writes always go to the session; bearer callers also get the cache entry,
kept for the budget plus a padding so a slightly late read still finds it.
Cache faults are logged and swallowed.
"""
import datetime
import logging

from django.core.cache import cache as default_cache
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from .conf import (
    SESSION_KEY, LAST_ACTIVITY_META_KEY,
    get_cache_key, get_cache_ttl_seconds, get_timeout_minutes,
)
from .exceptions import StoreUnavailable

logger = logging.getLogger(__name__)

SOURCE_SESSION = 'session'
SOURCE_HEADER = 'header'
SOURCE_CACHE = 'cache'
SOURCE_NEW = 'new'


class ActivityRecord:
    __slots__ = ('principal_id', 'last_activity_at', 'source')

    def __init__(self, principal_id, last_activity_at, source):
        self.principal_id = principal_id
        self.last_activity_at = last_activity_at
        self.source = source

    @property
    def is_first_contact(self):
        return self.source == SOURCE_NEW

    def __repr__(self):
        return f"<ActivityRecord principal={self.principal_id} at={self.last_activity_at.isoformat()} source={self.source}>"


def parse_timestamp(value):
    """ISO-8601 string to an aware datetime; None when missing or malformed"""
    if not value:
        return None
    if isinstance(value, datetime.datetime):
        parsed = value
    else:
        try:
            parsed = parse_datetime(str(value).strip())
        except ValueError:
            parsed = None
    if parsed is None:
        logger.debug(f"Ignoring unparseable activity timestamp: {value!r}")
        return None
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed, datetime.timezone.utc)
    return parsed


def format_timestamp(value):
    return value.astimezone(datetime.timezone.utc).isoformat().replace('+00:00', 'Z')


class ActivityStore:
    """Reads and writes the last-activity timestamp of one principal"""

    def __init__(self, cache=None):
        self.cache = cache or default_cache

    def sources(self):
        """Lookup order; the first source returning a timestamp wins"""
        return [
            (SOURCE_SESSION, self._from_session),
            (SOURCE_HEADER, self._from_header),
            (SOURCE_CACHE, self._from_cache),
        ]

    def get_last_activity(self, context, request, now=None):
        for source, reader in self.sources():
            value = reader(context, request)
            if value is not None:
                return ActivityRecord(context.principal_id, value, source)
        return ActivityRecord(context.principal_id, now or timezone.now(), SOURCE_NEW)

    def set_last_activity(self, context, request, timestamp, timeout_minutes=None):
        value = format_timestamp(timestamp)
        request.session[SESSION_KEY] = value

        if not context.is_bearer:
            return
        if timeout_minutes is None:
            timeout_minutes = get_timeout_minutes()
        try:
            self._cache_set(context.principal_id, value, get_cache_ttl_seconds(timeout_minutes))
        except StoreUnavailable as e:
            # The session value written above is all this request gets
            logger.warning(
                f"Activity cache unavailable for user {context.principal_id}, "
                f"kept session value only: {e}"
            )

    def reset(self, principal_id, request=None):
        """Start a fresh idle window: drop the session value and the cached entry"""
        session = getattr(request, 'session', None)
        if session is not None:
            session.pop(SESSION_KEY, None)
        return self.forget(principal_id)

    def forget(self, principal_id):
        """Drop the cached activity entry of a principal. Returns True on success."""
        try:
            self.cache.delete(get_cache_key(principal_id))
            return True
        except Exception as e:
            logger.warning(f"Could not clear activity cache for user {principal_id}: {str(e)}")
            return False

    def _from_session(self, context, request):
        session = getattr(request, 'session', None)
        if session is None:
            return None
        return parse_timestamp(session.get(SESSION_KEY))

    def _from_header(self, context, request):
        return parse_timestamp(request.META.get(LAST_ACTIVITY_META_KEY))

    def _from_cache(self, context, request):
        if not context.is_bearer:
            return None
        try:
            return parse_timestamp(self._cache_get(context.principal_id))
        except StoreUnavailable as e:
            logger.warning(f"Activity cache unavailable for user {context.principal_id}: {e}")
            return None

    def _cache_get(self, principal_id):
        try:
            return self.cache.get(get_cache_key(principal_id))
        except Exception as e:
            raise StoreUnavailable(str(e)) from e

    def _cache_set(self, principal_id, value, ttl):
        try:
            self.cache.set(get_cache_key(principal_id), value, ttl)
        except Exception as e:
            raise StoreUnavailable(str(e)) from e
