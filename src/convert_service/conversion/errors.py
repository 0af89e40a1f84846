class ConversionError(Exception):
    """Base class for errors surfaced to API clients.

    Each subclass carries the HTTP status and the machine-readable code used
    in the structured error body ``{"code": ..., "message": ...}``.
    """

    status_code = 500
    code = "conversion_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_detail(self) -> dict[str, str]:
        return {"code": self.code, "message": self.message}


class ValidationError(ConversionError):
    status_code = 400
    code = "invalid_request"


class UnsupportedFormatError(ConversionError):
    status_code = 400
    code = "unsupported_format"


class SizeLimitExceeded(ConversionError):
    status_code = 413
    code = "payload_too_large"


class NotFoundError(ConversionError):
    status_code = 404
    code = "not_found"


class CodecFailure(ConversionError):
    status_code = 500
    code = "conversion_failed"
