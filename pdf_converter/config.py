import os
from dataclasses import dataclass
from typing import Mapping

DEFAULT_SECRET_NAME = "pdf-converter/jwt-secret"
DEFAULT_REGION = "us-east-1"


class ConfigurationError(Exception):
    pass


def _int(env: Mapping[str, str], name: str, default: int, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


def _float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from exc
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative, got {value}")
    return value


def _bool(env: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw = env.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _optional(env: Mapping[str, str], name: str) -> str | None:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return None
    return raw


@dataclass(frozen=True)
class Settings:
    """Runtime configuration, read once at cold start."""

    jwt_secret_name: str = DEFAULT_SECRET_NAME
    jwt_public_key: str | None = None
    jwt_grace_period_seconds: int = 300
    jwt_audience: str | None = None
    jwt_issuer: str | None = None
    required_permission: str | None = None
    secret_cache_seconds: int = 86400

    aws_region: str = DEFAULT_REGION
    aws_endpoint_url: str | None = None

    conversion_dpi: int = 300
    png_compression: int = 6
    max_pages: int = 100
    max_pdf_bytes: int = 100 * 1024 * 1024
    worker_pool_size: int = 5

    download_timeout_seconds: float = 30.0
    upload_timeout_seconds: float = 60.0
    render_timeout_seconds: float = 240.0
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 0.5

    webhook_timeout_seconds: float = 10.0
    webhook_max_retries: int = 3
    allow_private_webhooks: bool = False

    metrics_namespace: str = "PdfConverter"
    cors_url: str = "*"

    @property
    def jwt_algorithm(self) -> str:
        return "RS256" if self.jwt_public_key else "HS256"

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env

        compression = _int(env, "PNG_COMPRESSION", 6)
        if compression > 9:
            raise ConfigurationError(f"PNG_COMPRESSION must be between 0 and 9, got {compression}")

        return cls(
            jwt_secret_name=env.get("JWT_SECRET_NAME") or DEFAULT_SECRET_NAME,
            jwt_public_key=_optional(env, "JWT_PUBLIC_KEY"),
            jwt_grace_period_seconds=_int(env, "JWT_GRACE_PERIOD_SECONDS", 300),
            jwt_audience=_optional(env, "JWT_AUDIENCE"),
            jwt_issuer=_optional(env, "JWT_ISSUER"),
            required_permission=_optional(env, "REQUIRED_PERMISSION"),
            secret_cache_seconds=_int(env, "SECRET_CACHE_SECONDS", 86400),
            aws_region=env.get("AWS_REGION") or env.get("AWS_DEFAULT_REGION") or DEFAULT_REGION,
            aws_endpoint_url=_optional(env, "AWS_ENDPOINT_URL"),
            conversion_dpi=_int(env, "CONVERSION_DPI", 300, minimum=1),
            png_compression=compression,
            max_pages=_int(env, "MAX_PAGES", 100, minimum=1),
            max_pdf_bytes=_int(env, "MAX_PDF_BYTES", 100 * 1024 * 1024, minimum=1),
            worker_pool_size=_int(env, "WORKER_POOL_SIZE", 5, minimum=1),
            download_timeout_seconds=_float(env, "DOWNLOAD_TIMEOUT_SECONDS", 30.0),
            upload_timeout_seconds=_float(env, "UPLOAD_TIMEOUT_SECONDS", 60.0),
            render_timeout_seconds=_float(env, "RENDER_TIMEOUT_SECONDS", 240.0),
            retry_max_attempts=_int(env, "RETRY_MAX_ATTEMPTS", 3, minimum=1),
            retry_base_delay_seconds=_float(env, "RETRY_BASE_DELAY_SECONDS", 0.5),
            webhook_timeout_seconds=_float(env, "WEBHOOK_TIMEOUT_SECONDS", 10.0),
            webhook_max_retries=_int(env, "WEBHOOK_MAX_RETRIES", 3, minimum=1),
            allow_private_webhooks=_bool(env, "ALLOW_PRIVATE_WEBHOOKS"),
            metrics_namespace=env.get("METRICS_NAMESPACE") or "PdfConverter",
            cors_url=env.get("CORS_URL", "*"),
        )
