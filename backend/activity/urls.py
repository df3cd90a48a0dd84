from django.urls import path
from .views import session_status, logout

urlpatterns = [
    path('auth/session/', session_status, name='session-status'),
    path('auth/logout/', logout, name='logout'),
]
