from __future__ import annotations

import asyncio
import json
import time
from collections.abc import Mapping
from typing import Final

import httpx

from ..config import RecognitionConfig
from ..dataurl import decode_payload, media_type_or_default, parse_data_url
from ..errors import AppError, ErrorCode, app_error
from ..logging import get_logger, log_event
from ..types import MIB, Car
from .normalize import normalize_predictions

_UNAVAILABLE_MESSAGE: Final[str] = (
    "The car recognition server is temporarily unavailable. Please try again later."
)
_SLOW_MESSAGE: Final[str] = (
    "The request took too long to complete. Please try with a smaller image "
    "or check your internet connection."
)
_UPLOAD_FILENAME: Final[str] = "image.jpg"


def shape_error_message(err: AppError) -> str:
    """Rephrase gateway and timeout failures for display; pass others through."""
    msg = err.message
    if "502" in msg or "504" in msg:
        return _UNAVAILABLE_MESSAGE
    if err.code is ErrorCode.timeout or "timeout" in msg.lower():
        return _SLOW_MESSAGE
    return msg


class RecognitionRelay:
    """Forwards a data-URL image to the external classifier and normalizes the reply.

    The endpoint URL comes from the injected `RecognitionConfig`. One POST is
    made per call with no retries; the whole call is bounded by
    `timeout_seconds`.
    """

    def __init__(
        self,
        config: RecognitionConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._config = config
        self._transport = transport

    @property
    def config(self) -> RecognitionConfig:
        return self._config

    @property
    def ready(self) -> bool:
        return self._config.configured

    async def recognize(self, image_url: str | None) -> list[Car]:
        if not self._config.configured:
            get_logger().error("recognition_not_configured api_url=unset")
            raise app_error(
                ErrorCode.configuration_error,
                "Server configuration error: Car recognition API URL not configured",
            )
        if not image_url:
            raise app_error(ErrorCode.missing_input, "No image URL provided")

        ref = parse_data_url(image_url)
        size_mb = ref.estimated_size_bytes / MIB
        log_event("recognize_received", fields={"size_mb": float(size_mb)})
        if ref.estimated_size_bytes > self._config.max_payload_bytes:
            get_logger().warning(
                "recognize_payload_too_large size_mb=%.2f max_mb=%d",
                size_mb,
                self._config.max_payload_mb,
            )
            raise app_error(
                ErrorCode.payload_too_large,
                f"Image is too large. Please use an image smaller than "
                f"{self._config.max_payload_mb}MB or try the compression option.",
            )

        try:
            raw = decode_payload(ref)
            body = await self._post(raw, media_type_or_default(ref))
            cars = self._parse(body)
        except AppError as err:
            if err.code in (ErrorCode.timeout, ErrorCode.upstream_error):
                get_logger().error("recognize_failed code=%s", err.code.value)
                raise AppError(err.code, err.http_status, shape_error_message(err)) from err
            raise

        fields: dict[str, object] = {"cars": len(cars)}
        if cars:
            fields.update(make=cars[0].make, model=cars[0].model, confidence=cars[0].confidence)
        log_event("recognize_finished", fields=fields)
        return cars

    async def _post(self, raw: bytes, media_type: str) -> object:
        timeout_s = float(self._config.timeout_seconds)
        files = {"file": (_UPLOAD_FILENAME, raw, media_type)}
        t0 = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=timeout_s, transport=self._transport) as client:
                resp = await asyncio.wait_for(
                    client.post(self._config.api_url, files=files), timeout=timeout_s
                )
        except (TimeoutError, httpx.TimeoutException):
            raise app_error(
                ErrorCode.timeout,
                f"Request to car recognition API timed out after {timeout_s:g} seconds",
            ) from None
        except httpx.RequestError as exc:
            raise app_error(
                ErrorCode.upstream_error, f"Car recognition API request failed: {exc}"
            ) from None

        log_event(
            "recognize_upstream_response",
            fields={
                "status": int(resp.status_code),
                "latency_ms": int((time.perf_counter() - t0) * 1000.0),
            },
        )
        if not resp.is_success:
            message = f"API responded with status: {resp.status_code}"
            text = resp.text
            if text:
                message += f" - {text}"
            raise app_error(ErrorCode.upstream_error, message)
        try:
            return resp.json()
        except ValueError:
            raise app_error(
                ErrorCode.upstream_error, "Car recognition API returned a non-JSON response"
            ) from None

    def _parse(self, body: object) -> list[Car]:
        if not isinstance(body, Mapping) or body.get("status") != "success":
            raise app_error(
                ErrorCode.upstream_error,
                "Car recognition API returned an error: " + json.dumps(body),
            )
        return normalize_predictions(body)
