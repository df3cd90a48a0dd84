from datetime import timedelta

from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework_simplejwt.tokens import Token
from django.utils import timezone

from .authentication import AuthContext
from .conf import get_timeout_minutes
from .invalidator import SessionInvalidator, REASON_LOGOUT
from .store import format_timestamp


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def session_status(request):
    """
    Current inactivity window. Reaching this view counts as activity, so the
    client's "stay signed in" action calls it to extend the session.
    """
    timeout_minutes = get_timeout_minutes()
    now = timezone.now()
    decision = getattr(request, 'activity_decision', None)
    return Response({
        'success': True,
        'data': {
            'timeout_minutes': timeout_minutes,
            'time_remaining': decision.remaining_seconds if decision else None,
            'last_activity': format_timestamp(now),
            'expires_at': format_timestamp(now + timedelta(minutes=timeout_minutes)),
        },
    })


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def logout(request):
    """End the session and revoke the access token this request was made with"""
    context = getattr(request, 'auth_context', None)
    if context is None:
        token = request.auth if isinstance(request.auth, Token) else None
        context = AuthContext(request.user, token)
    SessionInvalidator().invalidate(context, request._request, reason=REASON_LOGOUT)
    return Response({
        'success': True,
        'message': 'Logout successful',
    })
