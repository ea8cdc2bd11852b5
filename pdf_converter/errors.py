"""Exception hierarchy for the conversion pipeline.

Every error carries the HTTP status it maps to and the pipeline stage that
raised it. Messages are safe to return to clients: they never contain signed
URLs or credential material.
"""


class ConversionError(Exception):
    status_code = 500
    stage = "processing"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def public_message(self) -> str:
        return self.message


# Authentication


class AuthError(ConversionError):
    status_code = 401
    stage = "authentication"
    reason = "Unauthorized"


class MissingToken(AuthError):
    reason = "MissingToken"


class InvalidToken(AuthError):
    reason = "InvalidToken"


class ExpiredToken(AuthError):
    reason = "ExpiredToken"


class InsufficientPermissions(AuthError):
    status_code = 403
    reason = "InsufficientPermissions"


class AuthServiceUnavailable(AuthError):
    status_code = 500
    reason = "AuthServiceUnavailable"


# Payload validation


class RequestValidationError(ConversionError):
    status_code = 400
    stage = "validation"


# Pipeline stages


class StageError(ConversionError):
    operation = "Processing"

    def public_message(self) -> str:
        return f"{self.operation} failed: {self.message}"


class FetchError(StageError):
    stage = "fetch"
    operation = "PDF download"
    retryable = False


class DownloadTimeout(FetchError):
    status_code = 504
    retryable = True


class SourceAccessDenied(FetchError):
    status_code = 403


class SourceNotFound(FetchError):
    status_code = 404


class DocumentTooLarge(FetchError):
    status_code = 400


class InvalidDocumentFormat(FetchError):
    status_code = 422


class UpstreamError(FetchError):
    status_code = 502
    retryable = True


class RenderError(StageError):
    stage = "render"
    operation = "PDF conversion"


class TooManyPages(RenderError):
    status_code = 400


class PageRenderError(RenderError):
    def __init__(self, message: str, page_number: int):
        super().__init__(message)
        self.page_number = page_number


class ConversionTimeout(RenderError):
    status_code = 504


class PublishError(StageError):
    status_code = 502
    stage = "publish"
    operation = "Image upload"
    retryable = False

    def __init__(self, message: str, page_number: int | None = None, retryable: bool = False):
        super().__init__(message)
        self.page_number = page_number
        self.retryable = retryable


class DestinationAccessDenied(PublishError):
    status_code = 403
