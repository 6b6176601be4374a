SECRET_KEY = "csp-collector-test-key"

DEBUG = False

ALLOWED_HOSTS = ["testserver"]

INSTALLED_APPS = [
    "csp_collector",
]

MIDDLEWARE = [
    "django.middleware.common.CommonMiddleware",
    "django.middleware.csrf.CsrfViewMiddleware",
]

ROOT_URLCONF = "csp_collector.urls"

DATABASES = {}

USE_TZ = True

LOGGING = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "logfmt": {"()": "csp_collector.logfmt.LogfmtFormatter"},
    },
    "handlers": {
        "console": {"class": "logging.StreamHandler", "formatter": "logfmt"},
    },
    "loggers": {
        "csp_collector": {"handlers": ["console"], "level": "INFO"},
    },
}
