import ipaddress
from urllib.parse import urlparse

ALLOWED_DOCUMENT_SCHEMES = {"http", "https"}


class InvalidResourceError(ValueError):
    def __init__(self, uri):
        super().__init__(f"blocked URI ('{uri}') is an invalid resource")
        self.uri = uri


class InvalidDocumentURIError(ValueError):
    def __init__(self, uri):
        super().__init__(f"document URI ('{uri}') is invalid")
        self.uri = uri


def is_ignored_blocked_uri(uri, blocked_uris):
    # Entries are literal prefixes, so "localhost" and "about:blank" also
    # match exactly
    return any(entry and uri.startswith(entry) for entry in blocked_uris)


def is_valid_document_uri(uri):
    """
    An empty document URI is accepted. Anything else has to be an absolute
    http(s) URI with a host.
    """
    if not uri:
        return True
    try:
        parsed = urlparse(uri)
    except ValueError:
        return False
    return parsed.scheme.lower() in ALLOWED_DOCUMENT_SCHEMES and bool(parsed.netloc)


def validate_violation(report, config):
    """
    Check that a decoded report describes a real violation.
    Raises InvalidResourceError or InvalidDocumentURIError otherwise.
    """
    body = report.body

    if is_ignored_blocked_uri(body.blocked_uri, config.blocked_uris):
        raise InvalidResourceError(body.blocked_uri)

    if not is_valid_document_uri(body.document_uri):
        raise InvalidDocumentURIError(body.document_uri)


def truncate_query_string_fragment(uri):
    """Strip everything from the first "?" or "#" onwards."""
    for index, char in enumerate(uri):
        if char in "?#":
            return uri[:index]
    return uri


def truncate_client_ip(ip):
    """
    Mask an IPv4 address to its /24 network and an IPv6 address to its /64.
    Values that are not IP addresses are returned unchanged.
    """
    try:
        address = ipaddress.ip_address(ip)
    except ValueError:
        return ip

    prefix = 24 if address.version == 4 else 64
    network = ipaddress.ip_network(f"{address}/{prefix}", strict=False)
    return str(network.network_address)
