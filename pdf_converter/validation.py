"""Request payload parsing and URL/target validation.

All checks here run before any network I/O against the object store, so a bad
payload is rejected cheaply with a 400. The only lookup performed is the DNS
resolution of an optional webhook host, used to refuse callbacks that would
reach loopback or private networks.
"""

import ipaddress
import json
import re
import socket
from typing import Any, Callable
from urllib.parse import parse_qsl, unquote, urlsplit

from aws_lambda_powertools import Logger

from .config import Settings
from .errors import RequestValidationError
from .models import BucketKey, BucketPrefix, ConversionRequest, SignedUrl, TemporaryCredentials
from .sanitize import sanitize_url

logger = Logger(child=True)

UNIQUE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
MAX_UNIQUE_ID_LENGTH = 128
BUCKET_NAME_PATTERN = re.compile(r"^[a-z0-9][a-z0-9.-]{1,61}[a-z0-9]$")
MAX_KEY_LENGTH = 1024
CONTROL_CHARACTERS = re.compile(r"[\x00-\x1f\x7f]")
URL_PATH_PATTERN = re.compile(r"^(?:[A-Za-z0-9\-._~!$&'()*+,;=:@/]|%[0-9A-Fa-f]{2})*$")

S3_HOSTNAME_PATTERNS = (
    re.compile(r"^s3\.amazonaws\.com$"),
    re.compile(r"^s3[.-][a-z0-9-]+\.amazonaws\.com$"),
    re.compile(r"^s3\.dualstack\.[a-z0-9-]+\.amazonaws\.com$"),
    re.compile(r"^[a-z0-9.-]+\.s3\.amazonaws\.com$"),
    re.compile(r"^[a-z0-9.-]+\.s3[.-][a-z0-9-]+\.amazonaws\.com$"),
    re.compile(r"^[a-z0-9.-]+\.s3\.dualstack\.[a-z0-9-]+\.amazonaws\.com$"),
)
REQUIRED_SIGNATURE_PARAMS = ("X-Amz-Algorithm",)
DOCUMENT_EXTENSION = ".pdf"
ACCESS_KEY_PREFIXES = ("ASIA", "AKIA")

Resolver = Callable[..., list]


def is_s3_hostname(hostname: str | None) -> bool:
    if not hostname:
        return False
    return any(pattern.match(hostname) for pattern in S3_HOSTNAME_PATTERNS)


def is_endpoint_hostname(hostname: str | None, endpoint_host: str | None) -> bool:
    """True when ``hostname`` is the configured endpoint host or a virtual-hosted bucket under it."""
    if not hostname or not endpoint_host:
        return False
    hostname, endpoint_host = hostname.lower(), endpoint_host.lower()
    return hostname == endpoint_host or hostname.endswith(f".{endpoint_host}")


def resolve_public_address(hostname: str, port: int, resolver: Resolver = socket.getaddrinfo) -> str:
    """Resolve ``hostname`` and return its first address, refusing any non-public result."""
    try:
        addresses = resolver(hostname, port, proto=socket.IPPROTO_TCP)
    except (socket.gaierror, UnicodeError) as exc:
        raise RequestValidationError("Webhook host could not be resolved") from exc
    if not addresses:
        raise RequestValidationError("Webhook host could not be resolved")

    for address in addresses:
        if not _is_public_address(address[4][0]):
            logger.warning("Rejected webhook targeting internal address", extra={"host": hostname})
            raise RequestValidationError("Webhook URL must not target a private or internal address")
    return addresses[0][4][0]


def has_traversal(path: str) -> bool:
    decoded = unquote(path)
    if "\\" in decoded:
        return True
    return any(segment == ".." for segment in decoded.split("/"))


def parse_body(raw_body: Any) -> dict[str, Any]:
    if isinstance(raw_body, dict):
        body = raw_body
    else:
        if raw_body is None or (isinstance(raw_body, str) and not raw_body.strip()):
            raise RequestValidationError("Request body is required")
        try:
            body = json.loads(raw_body)
        except (TypeError, ValueError) as exc:
            raise RequestValidationError("Invalid JSON format") from exc

    if not isinstance(body, dict):
        raise RequestValidationError("Request body must be a JSON object")
    return body


class RequestValidator:
    def __init__(self, settings: Settings, resolver: Resolver = socket.getaddrinfo):
        self._allow_private_webhooks = settings.allow_private_webhooks
        # Plain http and non-AWS hosts are only accepted for a configured local endpoint.
        self._endpoint_host = urlsplit(settings.aws_endpoint_url).hostname if settings.aws_endpoint_url else None
        self._resolve = resolver

    def parse(self, raw_body: Any) -> ConversionRequest:
        body = parse_body(raw_body)
        unique_id = self.validate_unique_id(body.get("unique_id"))

        source = body.get("source")
        destination = body.get("destination")
        credentials = body.get("credentials")
        if source is None:
            raise RequestValidationError("Missing required field: source")
        if destination is None:
            raise RequestValidationError("Missing required field: destination")

        if isinstance(source, str) and isinstance(destination, str):
            if credentials is not None:
                raise RequestValidationError("credentials are only accepted with bucket/key addressing")
            request_source = self.validate_source_url(source)
            request_destination = self.validate_destination_url(destination)
            request_credentials = None
        elif isinstance(source, dict) and isinstance(destination, dict):
            request_source = self.validate_source_target(source)
            request_destination = self.validate_destination_target(destination)
            request_credentials = self.validate_credentials(credentials)
        elif isinstance(source, (str, dict)) and isinstance(destination, (str, dict)):
            raise RequestValidationError("source and destination must use the same addressing scheme")
        elif not isinstance(source, (str, dict)):
            raise RequestValidationError("source must be a signed URL or an object with bucket and key")
        else:
            raise RequestValidationError("destination must be a signed URL or an object with bucket and prefix")

        webhook = body.get("webhook")
        if webhook in (None, ""):
            webhook = None
        else:
            webhook = self.validate_webhook(webhook)

        return ConversionRequest(
            unique_id=unique_id,
            source=request_source,
            destination=request_destination,
            credentials=request_credentials,
            webhook=webhook,
        )

    def validate_unique_id(self, unique_id: Any) -> str:
        if unique_id is None:
            raise RequestValidationError("Missing required field: unique_id")
        if (
            not isinstance(unique_id, str)
            or len(unique_id) > MAX_UNIQUE_ID_LENGTH
            or not UNIQUE_ID_PATTERN.match(unique_id)
        ):
            raise RequestValidationError(
                "Invalid unique_id format: only alphanumeric characters, underscores, and hyphens are allowed"
            )
        return unique_id

    def _validate_signed_url(self, url: str, field: str, require_document: bool) -> SignedUrl:
        if not url:
            raise RequestValidationError(f"{field} URL is required")
        try:
            parts = urlsplit(url)
            hostname = parts.hostname
        except ValueError as exc:
            raise RequestValidationError(f"Invalid {field} URL format") from exc

        local_endpoint = is_endpoint_hostname(hostname, self._endpoint_host)
        if parts.scheme != "https" and not (parts.scheme == "http" and local_endpoint):
            raise RequestValidationError(f"{field} URL must use https")
        if not (is_s3_hostname(hostname) or local_endpoint):
            raise RequestValidationError(f"{field} URL must point to an S3 endpoint")
        if has_traversal(parts.path):
            raise RequestValidationError(f"{field} URL path must not contain '..' segments")
        if not URL_PATH_PATTERN.match(parts.path):
            raise RequestValidationError(f"{field} URL path contains unsupported characters")
        if require_document and not unquote(parts.path).lower().endswith(DOCUMENT_EXTENSION):
            raise RequestValidationError(f"{field} URL must reference a {DOCUMENT_EXTENSION} file")

        params = {name for name, _ in parse_qsl(parts.query, keep_blank_values=True)}
        missing = [p for p in REQUIRED_SIGNATURE_PARAMS if p not in params]
        if missing:
            logger.warning(
                "Rejected unsigned URL",
                extra={"field": field, "url": sanitize_url(url), "missing": missing},
            )
            raise RequestValidationError(f"{field} URL is missing required signature parameters")

        return SignedUrl(url)

    def validate_source_url(self, url: str) -> SignedUrl:
        return self._validate_signed_url(url, "source", require_document=True)

    def validate_destination_url(self, url: str) -> SignedUrl:
        return self._validate_signed_url(url, "destination", require_document=False)

    def _validate_bucket(self, target: dict, field: str) -> str:
        bucket = target.get("bucket")
        if not isinstance(bucket, str) or not bucket:
            raise RequestValidationError(f"{field}.bucket is required")
        if not BUCKET_NAME_PATTERN.match(bucket):
            raise RequestValidationError(f"Invalid {field}.bucket format")
        return bucket

    def _validate_key(self, value: Any, field: str) -> str:
        if not isinstance(value, str) or not value:
            raise RequestValidationError(f"{field} is required")
        if len(value) > MAX_KEY_LENGTH:
            raise RequestValidationError(f"{field} is too long")
        if value.startswith("/") or has_traversal(value):
            raise RequestValidationError(f"{field} must be a relative path without '..' segments")
        if CONTROL_CHARACTERS.search(value):
            raise RequestValidationError(f"{field} contains unsupported characters")
        return value

    def validate_source_target(self, source: dict) -> BucketKey:
        bucket = self._validate_bucket(source, "source")
        key = self._validate_key(source.get("key"), "source.key")
        if not key.lower().endswith(DOCUMENT_EXTENSION):
            raise RequestValidationError(f"source.key must end with {DOCUMENT_EXTENSION}")
        return BucketKey(bucket=bucket, key=key)

    def validate_destination_target(self, destination: dict) -> BucketPrefix:
        bucket = self._validate_bucket(destination, "destination")
        prefix = self._validate_key(destination.get("prefix"), "destination.prefix")
        return BucketPrefix(bucket=bucket, prefix=prefix)

    def validate_credentials(self, credentials: Any) -> TemporaryCredentials:
        if credentials is None:
            raise RequestValidationError("Missing required field: credentials")
        if not isinstance(credentials, dict):
            raise RequestValidationError("credentials must be an object")

        for name in ("accessKeyId", "secretAccessKey", "sessionToken"):
            value = credentials.get(name)
            if not isinstance(value, str) or not value:
                raise RequestValidationError(f"credentials.{name} is required")

        if not credentials["accessKeyId"].startswith(ACCESS_KEY_PREFIXES):
            raise RequestValidationError("Invalid credentials.accessKeyId format")

        return TemporaryCredentials(
            access_key_id=credentials["accessKeyId"],
            secret_access_key=credentials["secretAccessKey"],
            session_token=credentials["sessionToken"],
        )

    def validate_webhook(self, url: Any) -> str:
        if not isinstance(url, str):
            raise RequestValidationError("Invalid webhook URL format")
        try:
            parts = urlsplit(url)
            hostname = parts.hostname
            port = parts.port
        except ValueError as exc:
            raise RequestValidationError("Invalid webhook URL format") from exc

        if parts.scheme not in ("http", "https") or not hostname:
            raise RequestValidationError("Invalid webhook URL format")
        if self._allow_private_webhooks:
            return url

        resolve_public_address(hostname, port or (443 if parts.scheme == "https" else 80), self._resolve)
        return url


def _is_public_address(raw: str) -> bool:
    try:
        ip = ipaddress.ip_address(raw.split("%", 1)[0])
    except ValueError:
        return False
    mapped = getattr(ip, "ipv4_mapped", None)
    if mapped is not None:
        ip = mapped
    return not (
        ip.is_loopback
        or ip.is_link_local
        or ip.is_private
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
    )
