from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Final

import httpx

from .compress import CompressOptions, prepare_image, preview_data_url
from .config import Settings
from .errors import AppError
from .logging import get_logger, log_event
from .types import Car, CompressedImage, UploadedImage

_UPLOAD_PATH: Final[str] = "/api/upload"
_RECOGNIZE_PATH: Final[str] = "/api/recognize"

_SUFFIX_MEDIA_TYPES: Final[dict[str, str]] = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
}


def read_image_file(path: Path) -> UploadedImage:
    """Read `path` into an `UploadedImage`, guessing the media type from its suffix."""
    media_type = _SUFFIX_MEDIA_TYPES.get(path.suffix.lower(), "application/octet-stream")
    return UploadedImage(data=path.read_bytes(), media_type=media_type, filename=path.name)


class CarRecognitionClient:
    """HTTP client for the upload and recognize endpoints.

    Methods return the decoded response envelope and never raise for HTTP or
    transport failures; those come back as `{"success": False, "error": ...}`.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 60.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self._base_url, timeout=self._timeout, transport=self._transport
        )

    def upload_image(self, image: UploadedImage | CompressedImage) -> dict[str, object]:
        files = {"image": (image.filename, image.data, image.media_type)}
        try:
            with self._client() as client:
                resp = client.post(_UPLOAD_PATH, files=files)
        except httpx.HTTPError as exc:
            get_logger().error("client_upload_failed error=%s", type(exc).__name__)
            return {"success": False, "error": str(exc) or "Failed to upload image"}
        return _envelope(resp)

    def recognize_car(self, image_url: str) -> dict[str, object]:
        try:
            with self._client() as client:
                resp = client.post(_RECOGNIZE_PATH, json={"imageUrl": image_url})
        except httpx.HTTPError as exc:
            get_logger().error("client_recognize_failed error=%s", type(exc).__name__)
            return {"success": False, "error": str(exc) or "Failed to recognize car"}
        return _envelope(resp)


def _envelope(resp: httpx.Response) -> dict[str, object]:
    if not resp.is_success:
        get_logger().error("client_response_not_ok status=%d", resp.status_code)
        # Prefer the service's own message when the body is an error envelope
        detail = _error_text(resp)
        return {
            "success": False,
            "error": detail or f"Server error: {resp.status_code} {resp.reason_phrase}",
        }
    try:
        body: object = resp.json()
    except ValueError:
        return {"success": False, "error": "Server returned a non-JSON response"}
    if not isinstance(body, dict):
        return {"success": False, "error": "Server returned an unexpected response"}
    return {str(k): v for k, v in body.items()}


def _error_text(resp: httpx.Response) -> str | None:
    try:
        body: object = resp.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        err = body.get("error")
        if isinstance(err, str) and err:
            return err
    return None


def _cars_from(data: object) -> list[Car]:
    if not isinstance(data, dict) or not isinstance(data.get("cars"), list):
        raise ValueError("Failed to recognize car")
    cars: list[Car] = []
    for item in data["cars"]:
        if not isinstance(item, dict):
            raise ValueError("Failed to recognize car")
        year = item.get("year")
        cars.append(
            Car(
                make=str(item.get("make", "")),
                model=str(item.get("model", "")),
                year=str(year) if year is not None else None,
                confidence=float(item.get("confidence", 0.0)),
            )
        )
    return cars


@dataclass
class RecognitionSession:
    """Holds the state of one user's recognition attempt.

    `recognize` runs compress, upload and recognize in order. Any failure
    clears the car list and records a readable message in `error`.
    """

    client: CarRecognitionClient
    max_size_mb: float = 5.0
    options: CompressOptions = field(default_factory=CompressOptions)
    is_loading: bool = False
    error: str | None = None
    image_url: str | None = None
    preview_url: str | None = None
    cars: list[Car] = field(default_factory=list)

    @classmethod
    def from_settings(cls, client: CarRecognitionClient, settings: Settings) -> RecognitionSession:
        c = settings.compression
        return cls(
            client=client, max_size_mb=c.max_size_mb, options=CompressOptions.from_config(c)
        )

    def reset(self) -> None:
        self.is_loading = False
        self.error = None
        self.image_url = None
        self.preview_url = None
        self.cars = []

    def recognize(self, image: UploadedImage) -> list[Car]:
        self.is_loading = True
        self.error = None
        try:
            compressed = prepare_image(image, self.max_size_mb, self.options)
            self.preview_url = preview_data_url(compressed)

            uploaded = self.client.upload_image(compressed)
            url = uploaded.get("imageUrl")
            if not uploaded.get("success") or not isinstance(url, str):
                raise ValueError(str(uploaded.get("error") or "Failed to upload image"))
            self.image_url = url

            result = self.client.recognize_car(url)
            if not result.get("success") or result.get("data") is None:
                raise ValueError(str(result.get("error") or "Failed to recognize car"))
            self.cars = _cars_from(result["data"])
            log_event("session_recognized", fields={"cars": len(self.cars)})
        except (AppError, ValueError, TypeError) as exc:
            self.error = exc.message if isinstance(exc, AppError) else str(exc)
            get_logger().error("session_recognize_failed")
            self.cars = []
        finally:
            self.is_loading = False
        return self.cars
