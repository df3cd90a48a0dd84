import django_filters
from .models import AuditLog


class AuditLogFilter(django_filters.FilterSet):
    """Query-string filters for the audit log list"""
    action = django_filters.ChoiceFilter(choices=AuditLog.ACTION_CHOICES)
    model = django_filters.CharFilter(field_name='model_name')
    user = django_filters.NumberFilter(field_name='user_id')
    date_from = django_filters.IsoDateTimeFilter(field_name='created_at', lookup_expr='gte')
    date_to = django_filters.IsoDateTimeFilter(field_name='created_at', lookup_expr='lte')

    class Meta:
        model = AuditLog
        fields = ['action', 'model', 'user', 'date_from', 'date_to']
