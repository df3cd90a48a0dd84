import logging

from django.http import JsonResponse
from django.utils import timezone

from .authentication import resolve_auth_context
from .conf import (
    TIMEOUT_HEADER, EVALUATED_AT_HEADER, REMAINING_HEADER,
    SESSION_TIMEOUT_ERROR_CODE, SESSION_TIMEOUT_MESSAGE,
    get_timeout_minutes,
)
from .evaluator import evaluate
from .invalidator import SessionInvalidator
from .store import ActivityStore, format_timestamp

logger = logging.getLogger(__name__)


def session_timeout_response(timeout_minutes):
    return JsonResponse({
        'success': False,
        'message': SESSION_TIMEOUT_MESSAGE,
        'error_code': SESSION_TIMEOUT_ERROR_CODE,
        'timeout_minutes': timeout_minutes,
    }, status=401)


class SessionTimeoutMiddleware:
    """
    Enforce the inactivity budget on every authenticated request.

    Anonymous traffic passes through untouched. An idle session is torn
    down and answered with a 401 ``SESSION_TIMEOUT`` before any view runs;
    otherwise the activity timestamp is refreshed and the response gets the
    X-Session-* telemetry headers. The remaining time reported is the one
    that was left when the request arrived, not the freshly reset window.
    """

    def __init__(self, get_response):
        self.get_response = get_response
        self.store = ActivityStore()
        self.invalidator = SessionInvalidator(self.store)

    def __call__(self, request):
        context = resolve_auth_context(request)
        if context is None:
            return self.get_response(request)

        timeout_minutes = get_timeout_minutes()
        now = timezone.now()
        record = self.store.get_last_activity(context, request, now=now)
        decision = evaluate(now, record.last_activity_at, timeout_minutes)

        if decision.expired:
            logger.debug(f"Rejecting request of user {context.principal_id}: idle {decision.elapsed_seconds}s ({record.source})")
            self.invalidator.invalidate(context, request, timeout_minutes)
            return session_timeout_response(timeout_minutes)

        self.store.set_last_activity(context, request, now, timeout_minutes)
        request.auth_context = context
        request.activity_decision = decision

        response = self.get_response(request)

        response[TIMEOUT_HEADER] = str(timeout_minutes * 60)
        response[EVALUATED_AT_HEADER] = format_timestamp(now)
        response[REMAINING_HEADER] = str(decision.remaining_seconds)
        return response
