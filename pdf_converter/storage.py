import boto3
from botocore.config import Config
from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from .config import Settings
from .models import TemporaryCredentials

NOT_FOUND_CODES = frozenset({"NoSuchKey", "NoSuchBucket", "NotFound", "404"})
ACCESS_DENIED_CODES = frozenset(
    {
        "AccessDenied",
        "403",
        "Forbidden",
        "InvalidAccessKeyId",
        "SignatureDoesNotMatch",
        "ExpiredToken",
        "InvalidToken",
        "AllAccessDisabled",
    }
)
THROTTLING_CODES = frozenset(
    {"SlowDown", "Throttling", "ThrottlingException", "RequestTimeout", "InternalError", "ServiceUnavailable"}
)
TIMEOUT_ERRORS = (ConnectTimeoutError, ReadTimeoutError)
CONNECTION_ERRORS = (EndpointConnectionError,)


def error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


def http_status(exc: ClientError) -> int:
    return int(exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0) or 0)


def is_not_found(exc: ClientError) -> bool:
    return error_code(exc) in NOT_FOUND_CODES or http_status(exc) == 404


def is_access_denied(exc: ClientError) -> bool:
    return error_code(exc) in ACCESS_DENIED_CODES or http_status(exc) == 403


def is_transient(exc: ClientError) -> bool:
    return error_code(exc) in THROTTLING_CODES or http_status(exc) >= 500 or http_status(exc) == 429


class S3ClientFactory:
    """Builds S3 clients bound to the caller's temporary credentials.

    botocore's own retries are disabled so the pipeline's retry policy is the
    only one in effect.
    """

    def __init__(self, settings: Settings, timeout: float):
        self._settings = settings
        self._config = Config(
            region_name=settings.aws_region,
            connect_timeout=timeout,
            read_timeout=timeout,
            retries={"total_max_attempts": 1},
            s3={"addressing_style": "path"} if settings.aws_endpoint_url else None,
        )

    def __call__(self, credentials: TemporaryCredentials):
        session = boto3.session.Session(
            aws_access_key_id=credentials.access_key_id,
            aws_secret_access_key=credentials.secret_access_key,
            aws_session_token=credentials.session_token,
            region_name=self._settings.aws_region,
        )
        return session.client("s3", endpoint_url=self._settings.aws_endpoint_url, config=self._config)
