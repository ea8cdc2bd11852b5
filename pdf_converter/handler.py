import json
import uuid

from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.event_handler import (
    APIGatewayRestResolver,
    CORSConfig,
    Response,
    content_types,
)
from aws_lambda_powertools.logging import correlation_paths
from aws_lambda_powertools.utilities.typing import LambdaContext

from .auth import JwtAuthenticator, authentication_middleware, build_authenticator
from .config import Settings
from .errors import AuthError, ConversionError
from .service import ConversionService
from .validation import RequestValidator

logger = Logger()
tracer = Tracer()


def json_response(status_code: int, body: dict) -> Response:
    return Response(
        status_code=status_code,
        content_type=content_types.APPLICATION_JSON,
        body=json.dumps(body),
    )


def build_app(
    settings: Settings,
    authenticator: JwtAuthenticator,
    validator: RequestValidator,
    service: ConversionService,
) -> APIGatewayRestResolver:
    cors_config = CORSConfig(allow_origin=settings.cors_url, allow_headers=["X-Auth-Token"])
    app = APIGatewayRestResolver(cors=cors_config)

    @app.post("/convert", middlewares=[authentication_middleware(authenticator)])
    def convert():
        request = validator.parse(app.current_event.decoded_body)
        result = service.process(request)
        return json_response(200, result.to_body())

    @app.exception_handler(AuthError)
    def handle_auth_error(e: AuthError):
        if e.status_code == 401:
            return json_response(
                401,
                {
                    "error": "Unauthorized",
                    "message": e.message,
                    "correlation_id": logger.get_correlation_id() or str(uuid.uuid4()),
                },
            )
        if e.status_code == 403:
            return json_response(403, {"error": "Forbidden", "message": e.message})

        logger.error(f"Authentication service error: {e.message}")
        return json_response(e.status_code, {"error": e.message})

    @app.exception_handler(ConversionError)
    def handle_conversion_error(e: ConversionError):
        if e.status_code >= 500:
            logger.error(f"{e.stage} failed: {e.message}", extra={"error_type": type(e).__name__})
        else:
            logger.warning(f"{e.stage} failed: {e.message}", extra={"error_type": type(e).__name__})
        return json_response(e.status_code, {"error": e.public_message()})

    @app.exception_handler(Exception)
    def handle_exception(e: Exception):
        logger.exception("An unexpected error occurred")
        return json_response(500, {"error": "Internal server error"})

    return app


settings = Settings.from_env()
service = ConversionService.from_settings(settings)
app = build_app(
    settings,
    authenticator=build_authenticator(settings),
    validator=RequestValidator(settings),
    service=service,
)


@logger.inject_lambda_context(correlation_id_path=correlation_paths.API_GATEWAY_REST, clear_state=True)
@tracer.capture_lambda_handler
def lambda_handler(event: dict, context: LambdaContext):
    try:
        return app.resolve(event, context)
    finally:
        # The environment is frozen once we return; give webhooks a bounded window.
        service.wait_for_notifications(settings.webhook_timeout_seconds)
