from django.contrib import admin
from django.contrib.auth.admin import UserAdmin as BaseUserAdmin
from .models import User, AuditLog
from .permissions import get_user_role


@admin.register(User)
class UserAdmin(BaseUserAdmin):
    list_display = ['username', 'email', 'role', 'is_active', 'last_login', 'date_joined']
    list_filter = ['is_active', 'is_superuser', 'groups']
    search_fields = ['username', 'email', 'phone']
    ordering = ['username']
    fieldsets = BaseUserAdmin.fieldsets + (
        ('Contact', {'fields': ('phone',)}),
    )
    add_fieldsets = BaseUserAdmin.add_fieldsets + (
        ('Contact', {'fields': ('phone',)}),
    )

    @admin.display(description='Role')
    def role(self, obj):
        return get_user_role(obj) or '-'


@admin.register(AuditLog)
class AuditLogAdmin(admin.ModelAdmin):
    """Session and authentication events; append-only from the admin"""
    list_display = ['created_at', 'action', 'object_name', 'channel', 'ip_address']
    list_filter = ['action', 'created_at']
    search_fields = ['user__username', 'object_name', 'ip_address']
    date_hierarchy = 'created_at'
    ordering = ['-created_at']
    readonly_fields = ['user', 'action', 'model_name', 'object_id', 'object_name', 'changes', 'ip_address', 'created_at']

    @admin.display(description='Channel')
    def channel(self, obj):
        return (obj.changes or {}).get('channel', '-')

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False
