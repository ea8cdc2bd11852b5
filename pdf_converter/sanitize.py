"""Redaction helpers so signed URLs and STS credentials never reach the logs."""

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .models import TemporaryCredentials

SENSITIVE_QUERY_PARAMS = frozenset(
    {
        "x-amz-signature",
        "x-amz-credential",
        "x-amz-security-token",
        "signature",
        "awsaccesskeyid",
    }
)
REDACTED = "REDACTED"


def sanitize_url(url: str) -> str:
    try:
        parts = urlsplit(url)
        query = parse_qsl(parts.query, keep_blank_values=True)
    except (TypeError, ValueError):
        return "[URL_PARSE_ERROR]"

    redacted = [(name, REDACTED if name.lower() in SENSITIVE_QUERY_PARAMS else value) for name, value in query]
    netloc = parts.hostname or ""
    if parts.port:
        netloc = f"{netloc}:{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, urlencode(redacted, safe="/"), ""))


def mask_credential(value: str | None) -> str:
    # Short values are redacted entirely; a 4+4 window would reveal most of them.
    if value is None:
        return "***MISSING***"
    if value == "":
        return "***EMPTY***"
    if len(value) < 12:
        return "***REDACTED***"
    return f"{value[:4]}...{value[-4:]}"


def sanitize_credentials(credentials: TemporaryCredentials | None) -> dict[str, str] | None:
    if credentials is None:
        return None
    return {
        "accessKeyId": mask_credential(credentials.access_key_id),
        "secretAccessKey": "***REDACTED***",
        "sessionToken": mask_credential(credentials.session_token),
    }
