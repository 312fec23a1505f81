from __future__ import annotations

from collections.abc import Callable

from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.datastructures import FormData, UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException

from ..config import Settings, UploadConfig
from ..dataurl import encode_data_url
from ..errors import AppError, ErrorCode, app_error, new_error
from ..logging import get_logger, init_logging, log_event
from ..middleware import RequestIdMiddleware
from ..recognition.relay import RecognitionRelay
from ..request_context import request_id_var
from ..version import get_version
from .schemas import RecognizeRequest, RecognizeResponse, UploadResponse

_UPLOAD_FIELD = "image"


# Exception handlers (module-level to keep app factory simple)
async def _handle_app_error(_: Request, exc: Exception) -> JSONResponse:
    rid = request_id_var.get()
    if not isinstance(exc, AppError):
        body = new_error(ErrorCode.internal_error, rid, message=str(exc))
        return JSONResponse(status_code=500, content=body.to_dict())
    body = new_error(exc.code, rid, message=exc.message)
    return JSONResponse(status_code=exc.http_status, content=body.to_dict())


async def _handle_validation(_: Request, exc: Exception) -> JSONResponse:
    rid = request_id_var.get()
    body = new_error(ErrorCode.invalid_input, rid, message="Malformed request body")
    return JSONResponse(status_code=400, content=body.to_dict())


async def _handle_http(_: Request, exc: Exception) -> JSONResponse:
    rid = request_id_var.get()
    code = int(getattr(exc, "status_code", 500))
    detail = getattr(exc, "detail", None)
    err = ErrorCode.invalid_input if 400 <= code < 500 else ErrorCode.internal_error
    body = new_error(err, rid, message=str(detail) if detail else None)
    return JSONResponse(status_code=code, content=body.to_dict())


async def _handle_unexpected(_: Request, exc: Exception) -> JSONResponse:
    get_logger().exception("unhandled_error type=%s", type(exc).__name__)
    rid = request_id_var.get()
    body = new_error(ErrorCode.internal_error, rid, message="Internal server error.")
    return JSONResponse(status_code=500, content=body.to_dict())


def _register_basic(app: FastAPI, provide_relay: Callable[[], RecognitionRelay]) -> None:
    async def _healthz() -> dict[str, str]:
        return {"status": "ok"}

    async def _readyz() -> dict[str, object]:
        if provide_relay().ready:
            return {"status": "ready"}
        return {"status": "not_ready", "recognition_configured": False}

    async def _version() -> dict[str, object]:
        v = get_version()
        return {"service": v.service, "version": v.version, "build": v.build, "commit": v.commit}

    app.add_api_route("/healthz", _healthz, methods=["GET"])
    app.add_api_route("/readyz", _readyz, methods=["GET"])
    app.add_api_route("/version", _version, methods=["GET"])


def _strict_validate_multipart(form: FormData) -> UploadFile:
    for key in form:
        if key != _UPLOAD_FIELD:
            raise app_error(ErrorCode.invalid_input, "Unexpected form field")
    parts = form.getlist(_UPLOAD_FIELD)
    if not parts:
        raise app_error(ErrorCode.missing_input, "No image provided")
    if len(parts) > 1:
        raise app_error(ErrorCode.invalid_input, "Multiple image parts not allowed")
    part = parts[0]
    if not isinstance(part, UploadFile):
        raise app_error(ErrorCode.invalid_input, "Image field must be a file")
    return part


def _ensure_image_content_type(ctype: str) -> None:
    if not ctype.startswith("image/"):
        raise app_error(ErrorCode.unsupported_media_type, "Please upload an image file.")


def _raise_if_too_large(n_bytes: int, limits: UploadConfig) -> None:
    if n_bytes > limits.max_upload_bytes:
        raise app_error(
            ErrorCode.too_large, f"File exceeds size limit of {limits.max_upload_mb}MB"
        )


def _register_upload(app: FastAPI, provide_settings: Callable[[], Settings]) -> None:
    async def _upload(
        request: Request,
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> dict[str, object]:
        limits = provide_settings().upload
        if content_length is not None:
            _raise_if_too_large(content_length, limits)

        form = await request.form()
        part = _strict_validate_multipart(form)
        ctype = (part.content_type or "").lower()
        _ensure_image_content_type(ctype)

        try:
            raw = await part.read()
        except OSError:
            get_logger().exception("upload_read_failed")
            raise app_error(ErrorCode.processing_error, "Failed to process upload") from None
        _raise_if_too_large(len(raw), limits)
        if not raw:
            raise app_error(ErrorCode.invalid_input, "Uploaded image is empty")

        log_event("upload_finished", fields={"size_bytes": len(raw), "media_type": ctype})
        return {"success": True, "imageUrl": encode_data_url(raw, ctype)}

    app.add_api_route(
        "/api/upload", _upload, methods=["POST"], response_model=UploadResponse
    )


def _register_recognize(app: FastAPI, provide_relay: Callable[[], RecognitionRelay]) -> None:
    async def _recognize(req: RecognizeRequest) -> dict[str, object]:
        cars = await provide_relay().recognize(req.imageUrl)
        return {"success": True, "data": {"cars": [c.to_dict() for c in cars]}}

    app.add_api_route(
        "/api/recognize",
        _recognize,
        methods=["POST"],
        response_model=RecognizeResponse,
        response_model_exclude_none=True,
    )


def create_app(
    settings: Settings | None = None,
    relay_provider: Callable[[], RecognitionRelay] | None = None,
) -> FastAPI:
    """Application factory.

    Parameters:
    - `settings`: Optional pre-loaded settings; when omitted, loads from env and TOML.
    - `relay_provider`: Optional provider for a custom `RecognitionRelay` (primarily for tests).
    """
    s = settings or Settings.load()
    init_logging()
    app = FastAPI(title="car-recognition", version=get_version().version)
    app.add_middleware(RequestIdMiddleware)

    relay: RecognitionRelay = (
        relay_provider() if relay_provider is not None else RecognitionRelay(s.recognition)
    )
    if not relay.ready:
        get_logger().warning("recognition_api_url_missing recognize endpoint will fail")

    app.add_exception_handler(AppError, _handle_app_error)
    app.add_exception_handler(RequestValidationError, _handle_validation)
    app.add_exception_handler(StarletteHTTPException, _handle_http)
    app.add_exception_handler(Exception, _handle_unexpected)

    def _provide_relay() -> RecognitionRelay:
        return relay

    def _provide_settings() -> Settings:
        return s

    app.state.provide_relay = _provide_relay
    app.state.provide_settings = _provide_settings

    _register_basic(app, _provide_relay)
    _register_upload(app, _provide_settings)
    _register_recognize(app, _provide_relay)
    return app


# Default ASGI app for uvicorn
app = create_app()
