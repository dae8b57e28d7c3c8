from django.conf import settings
from django.contrib import admin
from django.urls import path

from config.api import api

urlpatterns = [
    # Django Admin, use {% url 'admin:index' %}
    path(settings.ADMIN_URL, admin.site.urls),
    # API
    path("api/", api.urls),
]
