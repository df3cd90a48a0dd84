"""
Tear-down of an expired (or logged out) session.

The steps run in a fixed order and each one is isolated: a failure is
logged with its traceback, recorded in the returned results, and the next
step still runs. Nothing raised here reaches the caller.
"""
import logging

from django.contrib.auth.models import AnonymousUser
from django.middleware.csrf import rotate_token

from backend.core.utils import create_audit_log, get_client_ip, get_user_agent
from .authentication import revoke_token
from .conf import get_timeout_minutes
from .exceptions import InvalidationStepFailure
from .store import ActivityStore

logger = logging.getLogger(__name__)

REASON_TIMEOUT = 'session_timeout'
REASON_LOGOUT = 'logout'

# Marker set on a request once it has been invalidated
INVALIDATED_ATTR = '_activity_invalidated'


class StepResult:
    __slots__ = ('name', 'ok', 'error')

    def __init__(self, name, ok=True, error=None):
        self.name = name
        self.ok = ok
        self.error = error

    def __repr__(self):
        return f"<StepResult {self.name} {'ok' if self.ok else 'failed'}>"


class SessionInvalidator:

    def __init__(self, store=None):
        self.store = store or ActivityStore()

    def steps(self):
        return [
            ('audit', self._audit),
            ('destroy_session', self._destroy_session),
            ('revoke_token', self._revoke_token),
            ('forget_activity', self._forget_activity),
            ('clear_auth', self._clear_auth),
        ]

    def invalidate(self, context, request, timeout_minutes=None, reason=REASON_TIMEOUT):
        """
        Invalidate the session of ``context.principal`` for ``request``.

        Returns one StepResult per step. A request that was already
        invalidated returns an empty list and changes nothing.
        """
        if getattr(request, INVALIDATED_ATTR, False):
            logger.debug(f"Session already invalidated for user {context.principal_id}, skipping")
            return []
        setattr(request, INVALIDATED_ATTR, True)

        if timeout_minutes is None:
            timeout_minutes = get_timeout_minutes()

        results = []
        for name, step in self.steps():
            try:
                step(context, request, timeout_minutes, reason)
                results.append(StepResult(name))
            except Exception as e:
                failure = InvalidationStepFailure(name, e)
                logger.error(
                    f"Error while cleaning up session of user {context.principal_id}: {failure}",
                    exc_info=True,
                )
                results.append(StepResult(name, ok=False, error=failure))
        return results

    def _audit(self, context, request, timeout_minutes, reason):
        principal = context.principal
        details = {
            'user_id': context.principal_id,
            'user_email': getattr(principal, 'email', None),
            'timeout_minutes': timeout_minutes,
            'ip': get_client_ip(request),
            'user_agent': get_user_agent(request),
            'channel': 'bearer' if context.is_bearer else 'session',
        }
        if reason == REASON_TIMEOUT:
            logger.info(f"Session expired due to inactivity: {details}")
        else:
            logger.info(f"Session closed ({reason}): {details}")
        create_audit_log(
            request=request,
            action=reason,
            model_name='User',
            object_id=context.principal_id,
            object_name=getattr(principal, 'username', None),
            changes=details,
            user=principal,
        )

    def _destroy_session(self, context, request, timeout_minutes, reason):
        session = getattr(request, 'session', None)
        if session is not None:
            session.flush()
        rotate_token(request)

    def _revoke_token(self, context, request, timeout_minutes, reason):
        if not context.is_bearer:
            return
        revoke_token(context.token, user=context.principal, reason=reason)

    def _forget_activity(self, context, request, timeout_minutes, reason):
        self.store.forget(context.principal_id)

    def _clear_auth(self, context, request, timeout_minutes, reason):
        request.user = AnonymousUser()
        request.auth_context = None
