from django.apps import AppConfig


class ActivityConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'backend.activity'
    label = 'activity'
    verbose_name = 'Session activity'
