from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final

from fastapi import status


class ErrorCode(str, Enum):
    invalid_input = "invalid_input"
    missing_input = "missing_input"
    unsupported_media_type = "unsupported_media_type"
    too_large = "too_large"
    payload_too_large = "payload_too_large"
    configuration_error = "configuration_error"
    timeout = "timeout"
    upstream_error = "upstream_error"
    processing_error = "processing_error"
    internal_error = "internal_error"


_DEFAULT_MESSAGE: Final[dict[ErrorCode, str]] = {
    ErrorCode.invalid_input: "Invalid input.",
    ErrorCode.missing_input: "Required input is missing.",
    ErrorCode.unsupported_media_type: "Please upload an image file.",
    ErrorCode.too_large: "File exceeds size limit.",
    ErrorCode.payload_too_large: "Image is too large.",
    ErrorCode.configuration_error: "Server configuration error.",
    ErrorCode.timeout: "Request timed out.",
    ErrorCode.upstream_error: "Car recognition API returned an error.",
    ErrorCode.processing_error: "Failed to process the image.",
    ErrorCode.internal_error: "Internal server error.",
}


@dataclass(frozen=True)
class ErrorResponse:
    code: ErrorCode
    message: str
    request_id: str

    def to_dict(self) -> dict[str, object]:
        return {
            "success": False,
            "error": self.message,
            "code": self.code.value,
            "request_id": self.request_id,
        }


class AppError(Exception):
    def __init__(self, code: ErrorCode, http_status: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.http_status = http_status
        self.message = message


def new_error(code: ErrorCode, request_id: str, message: str | None = None) -> ErrorResponse:
    msg = message if message is not None else _DEFAULT_MESSAGE.get(code, "")
    return ErrorResponse(code=code, message=msg, request_id=request_id)


def app_error(code: ErrorCode, message: str | None = None) -> AppError:
    """Build an `AppError` with the status that belongs to `code`."""
    msg = message if message is not None else _DEFAULT_MESSAGE.get(code, "")
    return AppError(code, status_for(code), msg)


def status_for(code: ErrorCode) -> int:
    if code is ErrorCode.invalid_input:
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.missing_input:
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.unsupported_media_type:
        return status.HTTP_415_UNSUPPORTED_MEDIA_TYPE
    if code is ErrorCode.too_large or code is ErrorCode.payload_too_large:
        return status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    if code is ErrorCode.timeout:
        return status.HTTP_504_GATEWAY_TIMEOUT
    if code is ErrorCode.upstream_error:
        return status.HTTP_502_BAD_GATEWAY
    # configuration, processing and internal errors
    return status.HTTP_500_INTERNAL_SERVER_ERROR
