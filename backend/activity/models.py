from django.conf import settings
from django.db import models
from django.utils import timezone


class RevokedTokenQuerySet(models.QuerySet):
    def expired(self, now=None):
        """Rows whose token would have been rejected anyway by its exp claim"""
        return self.filter(expires_at__lte=now or timezone.now())


class RevokedToken(models.Model):
    """A single access credential that must no longer be accepted"""
    jti = models.CharField(max_length=255, unique=True)
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, null=True, related_name='revoked_tokens')
    reason = models.CharField(max_length=50, blank=True)
    expires_at = models.DateTimeField(null=True, blank=True)
    revoked_at = models.DateTimeField(auto_now_add=True)

    objects = RevokedTokenQuerySet.as_manager()

    class Meta:
        db_table = 'revoked_tokens'
        ordering = ['-revoked_at']
        indexes = [
            models.Index(fields=['expires_at'], name='revoked_tokens_expires_idx'),
        ]

    def __str__(self):
        return f"{self.jti} ({self.reason or 'revoked'})"
