from django.contrib import admin
from .models import RevokedToken


@admin.register(RevokedToken)
class RevokedTokenAdmin(admin.ModelAdmin):
    list_display = ['jti', 'user', 'reason', 'expires_at', 'revoked_at']
    list_filter = ['reason', 'revoked_at']
    search_fields = ['jti', 'user__username']
    ordering = ['-revoked_at']
    readonly_fields = ['jti', 'user', 'reason', 'expires_at', 'revoked_at']
