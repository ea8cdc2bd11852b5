"""Bearer-token authentication for the conversion endpoint.

Tokens are JWTs signed either with a shared HS256 secret kept in AWS Secrets
Manager, or with an RSA key pair when ``JWT_PUBLIC_KEY`` is configured. Expiry
is enforced manually so a configurable grace period can be applied.

The authenticator is attached to the API resolver as a middleware built at
cold start (see ``authentication_middleware``); handlers read the resulting
``AuthContext`` from ``app.context["auth"]``.
"""

import time
from typing import Any, Callable, Mapping

import boto3
from aws_lambda_powertools import Logger
from aws_lambda_powertools.event_handler import APIGatewayRestResolver, Response
from aws_lambda_powertools.event_handler.middlewares import NextMiddleware
from aws_lambda_powertools.metrics import MetricUnit, single_metric
from aws_lambda_powertools.utilities.parameters import SecretsProvider
from aws_lambda_powertools.utilities.parameters.exceptions import GetParameterError
from jose import jwt
from jose.exceptions import JOSEError

from .config import Settings
from .errors import (
    AuthError,
    AuthServiceUnavailable,
    ExpiredToken,
    InsufficientPermissions,
    InvalidToken,
    MissingToken,
)
from .models import AuthContext

logger = Logger(child=True)


def extract_token(headers: Mapping[str, str] | None) -> str:
    """Return the bearer token from ``Authorization`` or ``X-Auth-Token``.

    A well-formed ``Authorization: Bearer`` header wins when both are sent.
    """
    normalized = {str(k).lower(): v for k, v in (headers or {}).items() if v is not None}
    authorization = normalized.get("authorization")
    x_auth_token = normalized.get("x-auth-token")

    if authorization:
        parts = authorization.split()
        if len(parts) == 2 and parts[0].lower() == "bearer":
            return parts[1]

    if x_auth_token and x_auth_token.strip():
        return x_auth_token.strip()

    if authorization is not None:
        raise InvalidToken("Invalid Bearer token format")
    raise MissingToken("Missing authentication token")


class SigningKeyProvider:
    """Resolves the verification key, caching the Secrets Manager value across warm starts."""

    def __init__(self, settings: Settings, secrets_provider: SecretsProvider | None = None):
        self._settings = settings
        self._secrets_provider = secrets_provider
        self._public_key = (settings.jwt_public_key or "").replace("\\n", "\n") or None

    @property
    def algorithm(self) -> str:
        return "RS256" if self._public_key else "HS256"

    def _provider(self) -> SecretsProvider:
        if self._secrets_provider is None:
            client = boto3.client(
                "secretsmanager",
                region_name=self._settings.aws_region,
                endpoint_url=self._settings.aws_endpoint_url,
            )
            self._secrets_provider = SecretsProvider(boto3_client=client)
        return self._secrets_provider

    def get_key(self) -> str:
        if self._public_key:
            return self._public_key

        try:
            secret = self._provider().get(
                self._settings.jwt_secret_name,
                max_age=self._settings.secret_cache_seconds,
            )
        except GetParameterError as exc:
            logger.error(
                "Failed to retrieve JWT secret",
                extra={"secret_name": self._settings.jwt_secret_name, "error": str(exc)},
            )
            raise AuthServiceUnavailable("Authentication service unavailable") from exc

        if isinstance(secret, bytes):
            secret = secret.decode("utf-8")
        if not secret:
            logger.error("JWT secret is empty", extra={"secret_name": self._settings.jwt_secret_name})
            raise AuthServiceUnavailable("Authentication service unavailable")
        return secret


def _permissions(claims: Mapping[str, Any]) -> tuple[str, ...]:
    raw = claims.get("permissions") or claims.get("scope") or ()
    if isinstance(raw, str):
        return tuple(raw.split())
    if isinstance(raw, (list, tuple)):
        return tuple(str(p) for p in raw)
    return ()


class TokenValidator:
    def __init__(self, settings: Settings, keys: SigningKeyProvider):
        self._settings = settings
        self._keys = keys

    @property
    def grace_period(self) -> int:
        return self._settings.jwt_grace_period_seconds

    def validate(self, token: str, now: float | None = None) -> AuthContext:
        if not token:
            raise MissingToken("Missing authentication token")

        key = self._keys.get_key()
        options = {
            "verify_exp": False,
            "verify_aud": self._settings.jwt_audience is not None,
        }
        try:
            claims = jwt.decode(
                token,
                key,
                algorithms=[self._keys.algorithm],
                audience=self._settings.jwt_audience,
                issuer=self._settings.jwt_issuer,
                options=options,
            )
        except JOSEError as exc:
            raise InvalidToken("Invalid or malformed token") from exc

        exp = claims.get("exp")
        if exp is not None:
            if not isinstance(exp, (int, float)) or isinstance(exp, bool):
                raise InvalidToken("Invalid expiration claim")
            current = time.time() if now is None else now
            if current - exp > self.grace_period:
                raise ExpiredToken("Token has expired beyond grace period")

        return AuthContext(
            subject=claims.get("sub") or claims.get("user_id"),
            permissions=_permissions(claims),
            expires_at=int(exp) if exp is not None else None,
            claims=dict(claims),
        )


class AuthMetrics:
    """Best-effort authentication counters emitted as CloudWatch EMF."""

    def __init__(self, namespace: str):
        self._namespace = namespace

    def record(self, name: str, reason: str) -> None:
        try:
            with single_metric(name=name, unit=MetricUnit.Count, value=1, namespace=self._namespace) as metric:
                metric.add_dimension(name="Reason", value=reason)
        except Exception as exc:
            logger.warning("Failed to record authentication metric", extra={"metric": name, "error": str(exc)})


class JwtAuthenticator:
    def __init__(
        self,
        validator: TokenValidator,
        metrics: AuthMetrics | None = None,
        required_permission: str | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self._validator = validator
        self._metrics = metrics
        self._required_permission = required_permission
        self._clock = clock

    def _record(self, name: str, reason: str) -> None:
        if self._metrics is not None:
            self._metrics.record(name, reason)

    def authenticate(self, headers: Mapping[str, str] | None) -> AuthContext:
        try:
            token = extract_token(headers)
            context = self._validator.validate(token, now=self._clock())
            if self._required_permission and not context.has_permission(self._required_permission):
                raise InsufficientPermissions(f"Insufficient permissions. Required: {self._required_permission}")
        except AuthError as exc:
            logger.warning("Authentication failed", extra={"reason": exc.reason, "detail": exc.message})
            self._record("AuthenticationFailure", exc.reason)
            raise

        logger.debug("Authentication successful", extra={"subject": context.subject})
        self._record("AuthenticationSuccess", "ValidToken")
        return context


def build_authenticator(settings: Settings, secrets_provider: SecretsProvider | None = None) -> JwtAuthenticator:
    keys = SigningKeyProvider(settings, secrets_provider)
    return JwtAuthenticator(
        TokenValidator(settings, keys),
        metrics=AuthMetrics(settings.metrics_namespace),
        required_permission=settings.required_permission,
    )


def authentication_middleware(authenticator: JwtAuthenticator):
    def authenticate(app: APIGatewayRestResolver, next_middleware: NextMiddleware) -> Response:
        app.append_context(auth=authenticator.authenticate(app.current_event.headers))
        return next_middleware(app)

    return authenticate
