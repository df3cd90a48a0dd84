"""
Authentication context for the activity tracker.

Who is calling, and over which channel: a bearer JWT or the cookie session.
"""
import logging

from rest_framework.exceptions import AuthenticationFailed
from rest_framework_simplejwt.authentication import JWTAuthentication
from rest_framework_simplejwt.exceptions import InvalidToken
from rest_framework_simplejwt.settings import api_settings
from rest_framework_simplejwt.utils import datetime_from_epoch

from .models import RevokedToken

logger = logging.getLogger(__name__)


class RevocableJWTAuthentication(JWTAuthentication):
    """JWT authentication that also rejects individually revoked access tokens"""

    def get_validated_token(self, raw_token):
        token = super().get_validated_token(raw_token)
        jti = token.get(api_settings.JTI_CLAIM)
        if jti and RevokedToken.objects.filter(jti=jti).exists():
            raise InvalidToken('Token has been revoked.')
        return token


class AuthContext:
    """The authenticated principal of one request and its bearer token, if any"""

    __slots__ = ('principal', 'token')

    def __init__(self, principal, token=None):
        self.principal = principal
        self.token = token

    @property
    def principal_id(self):
        return self.principal.pk

    @property
    def is_bearer(self):
        return self.token is not None

    def __repr__(self):
        channel = 'bearer' if self.is_bearer else 'session'
        return f"<AuthContext principal={self.principal_id} channel={channel}>"


def resolve_auth_context(request, authenticator=None):
    """
    Work out who is making ``request``.

    A valid bearer token wins over the cookie session. Invalid or revoked
    tokens are ignored here; the view's own authentication rejects them.
    Returns None for anonymous traffic.
    """
    authenticator = authenticator or RevocableJWTAuthentication()
    try:
        result = authenticator.authenticate(request)
    except AuthenticationFailed as e:
        logger.debug(f"Bearer credential not usable for activity tracking: {e}")
        result = None

    if result is not None:
        user, token = result
        return AuthContext(user, token)

    user = getattr(request, 'user', None)
    if user is not None and user.is_authenticated:
        return AuthContext(user)
    return None


def revoke_token(token, user=None, reason=''):
    """Revoke exactly this token. Safe to call more than once."""
    jti = token.get(api_settings.JTI_CLAIM)
    if not jti:
        raise InvalidToken('Token has no identifier and cannot be revoked.')
    exp = token.get('exp')
    revoked, created = RevokedToken.objects.get_or_create(
        jti=jti,
        defaults={
            'user': user,
            'reason': reason,
            'expires_at': datetime_from_epoch(exp) if exp else None,
        },
    )
    return revoked, created
