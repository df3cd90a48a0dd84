"""Request metadata helpers and the audit trail writer"""
import logging

from .models import AuditLog

logger = logging.getLogger(__name__)


def get_client_ip(request):
    """First address of X-Forwarded-For, else REMOTE_ADDR"""
    meta = getattr(request, 'META', None)
    if not meta:
        return None
    forwarded = [part.strip() for part in meta.get('HTTP_X_FORWARDED_FOR', '').split(',') if part.strip()]
    if forwarded:
        return forwarded[0]
    return meta.get('REMOTE_ADDR') or None


def get_user_agent(request):
    meta = getattr(request, 'META', None) or {}
    return meta.get('HTTP_USER_AGENT') or None


def _resolve_actor(request, user):
    actor = user if user is not None else getattr(request, 'user', None)
    if actor is None or not actor.is_authenticated:
        return None
    return actor


def create_audit_log(request=None, action=None, model_name=None, object_id=None,
                     changes=None, user=None, object_name=None):
    """
    Write one AuditLog row and return it.

    ``user`` takes precedence over ``request.user``: by the time a session is
    torn down the request user may already be anonymous. Never raises; a
    missing required field or a failed write is logged and returns None.
    """
    missing = [name for name, value in (('action', action), ('model_name', model_name), ('object_id', object_id)) if not value]
    if missing:
        logger.warning(f"Audit log entry skipped, missing {', '.join(missing)}")
        return None

    try:
        return AuditLog.objects.create(
            user=_resolve_actor(request, user),
            action=action,
            model_name=model_name,
            object_id=str(object_id),
            object_name=object_name,
            changes=changes or {},
            ip_address=get_client_ip(request),
        )
    except Exception as e:
        logger.error(f"Failed to write audit log entry ({action} {model_name}#{object_id}): {str(e)}")
        return None
