"""
URL configuration for the pharmacy POS backend.

All API routes live under /api/v1/; the Django admin stays at /admin/.
"""
from django.contrib import admin
from django.urls import path, include

admin.site.site_header = "Pharmacy POS Admin Panel"
admin.site.site_title = "Pharmacy POS Admin Portal"
admin.site.index_title = "Welcome to the Pharmacy POS Admin Portal"

urlpatterns = [
    path('admin/', admin.site.urls),
    path('api/v1/', include('backend.core.urls')),
    path('api/v1/', include('backend.activity.urls')),
]
