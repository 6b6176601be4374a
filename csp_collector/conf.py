import logging
from dataclasses import dataclass

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

logger = logging.getLogger(__name__)

# Blocked URIs that only ever show up because of browser extensions,
# injected scripts or browser internals
DEFAULT_IGNORED_BLOCKED_URIS = (
    "resource://",
    "chromenull://",
    "chrome-extension://",
    "safari-extension://",
    "mxjscall://",
    "webviewprogressproxy://",
    "res://",
    "mx://",
    "safari-resource://",
    "chromeinvoke://",
    "chromeinvokeimmediate://",
    "mbinit://",
    "opera://",
    "localhost",
    "127.0.0.1",
    "none://",
    "about:blank",
    "android-webview",
    "ms-browser-extension",
    "wvjbscheme://__wvjb_queue_message__",
    "nativebaiduhd://adblock",
    "bdvideo://error",
)

# Default maximum size for a CSP report (in bytes)
DEFAULT_MAX_REPORT_SIZE = 100 * 1024

DEFAULT_MAX_FIELD_LENGTH = 2048

DEFAULT_HEALTH_CHECK_PATH = "_healthcheck"


def trim_empty_and_comments(lines):
    """
    Drop blank lines and "#" comment lines from a filter list.
    Surviving entries keep their order and are stripped of whitespace.
    """
    trimmed = []
    for line in lines:
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        trimmed.append(line)
    return trimmed


def load_blocked_uris(path):
    """Read a newline-delimited blocked URI filter file."""
    try:
        with open(path, encoding="utf-8") as f:
            lines = f.read().splitlines()
    except OSError as e:
        raise ImproperlyConfigured(
            f"Unable to read CSP blocked URI filter file {path!r}: {e}"
        ) from e

    blocked_uris = tuple(trim_empty_and_comments(lines))
    logger.debug(f"Loaded {len(blocked_uris)} blocked URI filters from {path}")
    return blocked_uris


@dataclass(frozen=True)
class HandlerConfig:
    """
    Read-only settings shared by every report request.
    Built once when the URLconf is loaded and never mutated afterwards.
    """

    blocked_uris: tuple = DEFAULT_IGNORED_BLOCKED_URIS
    truncate_query_string_fragment: bool = False
    metadata_object: bool = False
    log_client_ip: bool = False
    log_truncated_client_ip: bool = False
    max_report_size: int = DEFAULT_MAX_REPORT_SIZE
    max_field_length: int = DEFAULT_MAX_FIELD_LENGTH

    @classmethod
    def from_settings(cls):
        filter_file = getattr(settings, "CSP_COLLECTOR_FILTER_FILE", None)
        blocked_uris = getattr(settings, "CSP_COLLECTOR_BLOCKED_URIS", None)

        if filter_file and blocked_uris is not None:
            raise ImproperlyConfigured(
                "Set only one of CSP_COLLECTOR_FILTER_FILE and "
                "CSP_COLLECTOR_BLOCKED_URIS"
            )

        if filter_file:
            blocked_uris = load_blocked_uris(filter_file)
        elif blocked_uris is not None:
            if isinstance(blocked_uris, str):
                raise ImproperlyConfigured(
                    "CSP_COLLECTOR_BLOCKED_URIS must be a list of strings"
                )
            blocked_uris = tuple(trim_empty_and_comments(blocked_uris))
        else:
            blocked_uris = DEFAULT_IGNORED_BLOCKED_URIS

        max_report_size = getattr(
            settings, "CSP_COLLECTOR_MAX_REPORT_SIZE", DEFAULT_MAX_REPORT_SIZE
        )
        max_field_length = getattr(
            settings, "CSP_COLLECTOR_MAX_FIELD_LENGTH", DEFAULT_MAX_FIELD_LENGTH
        )
        if max_report_size <= 0 or max_field_length <= 0:
            raise ImproperlyConfigured(
                "CSP_COLLECTOR_MAX_REPORT_SIZE and CSP_COLLECTOR_MAX_FIELD_LENGTH "
                "must be positive"
            )

        return cls(
            blocked_uris=blocked_uris,
            truncate_query_string_fragment=getattr(
                settings, "CSP_COLLECTOR_TRUNCATE_QUERY_FRAGMENT", False
            ),
            metadata_object=getattr(
                settings, "CSP_COLLECTOR_QUERY_PARAMS_METADATA", False
            ),
            log_client_ip=getattr(settings, "CSP_COLLECTOR_LOG_CLIENT_IP", False),
            log_truncated_client_ip=getattr(
                settings, "CSP_COLLECTOR_LOG_TRUNCATED_CLIENT_IP", False
            ),
            max_report_size=max_report_size,
            max_field_length=max_field_length,
        )


def get_health_check_path():
    return getattr(
        settings, "CSP_COLLECTOR_HEALTH_CHECK_PATH", DEFAULT_HEALTH_CHECK_PATH
    ).strip("/")
