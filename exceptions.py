class SizefitError(Exception):
    """Base exception for all Sizefit errors."""

    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, message: str, **kwargs):
        self.message = message
        self.details = kwargs
        super().__init__(message)


class BadRequestError(SizefitError):
    """Malformed request body, invalid form fields, missing file."""

    status_code = 400
    error_code = "bad_request"


class FileTooLargeError(SizefitError):
    """File exceeds maximum allowed size."""

    status_code = 413
    error_code = "file_too_large"


class UnsupportedFormatError(SizefitError):
    """File format not recognized via magic bytes."""

    status_code = 415
    error_code = "unsupported_format"


class DecodeError(SizefitError):
    """Source bytes cannot be rasterized."""

    status_code = 422
    error_code = "decode_failed"


class EncodeError(SizefitError):
    """Encoder rejected a candidate's dimensions or format."""

    status_code = 422
    error_code = "encode_failed"


class ImageNotFoundError(SizefitError):
    """No image record with the given id."""

    status_code = 404
    error_code = "image_not_found"


class CompressionInProgressError(SizefitError):
    """Record is compressing; start/update rejected until it settles."""

    status_code = 409
    error_code = "compression_in_progress"


class BackpressureError(SizefitError):
    """Compression queue is full."""

    status_code = 503
    error_code = "service_overloaded"


class CompressionCancelledError(SizefitError):
    """Attempt was abandoned (record removed or shutdown) mid-pipeline."""

    status_code = 409
    error_code = "compression_cancelled"
