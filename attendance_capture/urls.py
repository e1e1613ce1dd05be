"""
Main URL configuration for the attendance capture project.

The REST API lives under ``api/v1/`` and the Django admin manages the
class rosters. Staff can scrape Prometheus metrics from ``metrics/``.
"""

from django.contrib import admin
from django.urls import include, path

from recognition import views as recog_views

urlpatterns = [
    path("api/v1/", include("recognition.api.urls")),
    path("admin/", admin.site.urls),
    path("metrics/", recog_views.monitoring_metrics, name="monitoring-metrics"),
]
