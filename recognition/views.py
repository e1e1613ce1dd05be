"""Plain Django views for the recognition app."""

from django.contrib.admin.views.decorators import staff_member_required
from django.http import HttpResponse

from . import monitoring


@staff_member_required
def monitoring_metrics(request):
    """Expose Prometheus metrics for the capture workflow."""

    payload = monitoring.export_metrics()
    return HttpResponse(payload, content_type=monitoring.prometheus_content_type())
