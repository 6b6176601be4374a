from django.apps import AppConfig


class CspCollectorConfig(AppConfig):
    name = "csp_collector"
    verbose_name = "CSP Collector"
