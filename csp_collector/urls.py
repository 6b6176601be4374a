from django.urls import path, re_path

from .conf import HandlerConfig, get_health_check_path
from .views import ViolationReportView, health_check_view

csp_report_view = ViolationReportView.as_view(config=HandlerConfig.from_settings())

urlpatterns = [
    path(f"{get_health_check_path()}/", health_check_view, name="csp_health_check"),
    # Reports are accepted on any path; the path is logged for correlation
    re_path(r"^.*$", csp_report_view, name="csp_report"),
]
