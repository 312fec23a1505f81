from __future__ import annotations

import io
import logging
from io import BytesIO

import httpx
import pytest
from fastapi.testclient import TestClient
from PIL import Image
from starlette.datastructures import UploadFile

from car_recognition.api.app import create_app
from car_recognition.config import (
    AppConfig,
    CompressionConfig,
    RecognitionConfig,
    Settings,
    UploadConfig,
)
from car_recognition.dataurl import decode_payload, parse_data_url
from car_recognition.recognition.relay import RecognitionRelay

_API = "http://classifier.test/predict"


def _mk_jpeg_bytes() -> bytes:
    img = Image.new("RGB", (32, 24), (10, 120, 200))
    b = BytesIO()
    img.save(b, format="JPEG")
    return b.getvalue()


def _settings(api_url: str = "", max_upload_mb: int = 10) -> Settings:
    return Settings(
        app=AppConfig(),
        recognition=RecognitionConfig(api_url=api_url),
        upload=UploadConfig(max_upload_mb=max_upload_mb),
        compression=CompressionConfig(),
    )


def _client_with_upstream(response: httpx.Response) -> tuple[TestClient, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return response

    s = _settings(api_url=_API)
    relay = RecognitionRelay(s.recognition, transport=httpx.MockTransport(_handler))
    app = create_app(s, relay_provider=lambda: relay)
    return TestClient(app), seen


def test_routes_health_ready_version() -> None:
    client = TestClient(create_app(_settings()))
    r1 = client.get("/healthz")
    assert r1.status_code == 200 and r1.json() == {"status": "ok"}

    r2 = client.get("/readyz")
    assert r2.status_code == 200 and r2.json()["status"] == "not_ready"

    r3 = client.get("/version")
    assert r3.status_code == 200 and r3.json()["service"] == "car-recognition"

    ready = TestClient(create_app(_settings(api_url=_API)))
    assert ready.get("/readyz").json() == {"status": "ready"}


def test_upload_returns_data_url_of_same_bytes() -> None:
    client = TestClient(create_app(_settings()))
    raw = _mk_jpeg_bytes()
    r = client.post("/api/upload", files={"image": ("car.jpg", raw, "image/jpeg")})
    assert r.status_code == 200
    body = r.json()
    assert body["success"] is True
    url = body["imageUrl"]
    assert url.startswith("data:image/jpeg;base64,")
    assert decode_payload(parse_data_url(url)) == raw
    assert "x-request-id" in str(r.headers).lower()


def test_upload_missing_image_is_400() -> None:
    client = TestClient(create_app(_settings()))
    r = client.post("/api/upload", files={"image_other": ("a.jpg", b"x", "image/jpeg")})
    assert r.status_code == 400
    assert r.json()["success"] is False

    r2 = client.post("/api/upload")
    assert r2.status_code == 400
    assert r2.json() == {
        "success": False,
        "error": "No image provided",
        "code": "missing_input",
        "request_id": r2.headers["x-request-id"],
    }


def test_upload_rejects_extra_fields_and_duplicates() -> None:
    client = TestClient(create_app(_settings()))
    raw = _mk_jpeg_bytes()
    r1 = client.post(
        "/api/upload",
        files={"image": ("car.jpg", raw, "image/jpeg")},
        data={"note": "extra"},
    )
    assert r1.status_code == 400 and r1.json()["code"] == "invalid_input"

    files_list = [
        ("image", ("a.jpg", raw, "image/jpeg")),
        ("image", ("b.jpg", raw, "image/jpeg")),
    ]
    r2 = client.post("/api/upload", files=files_list)
    assert r2.status_code == 400 and r2.json()["code"] == "invalid_input"


def test_upload_non_image_is_415() -> None:
    client = TestClient(create_app(_settings()))
    r = client.post("/api/upload", files={"image": ("x.txt", b"hello", "text/plain")})
    assert r.status_code == 415
    assert r.json()["code"] == "unsupported_media_type"


def test_upload_too_large_is_413() -> None:
    client = TestClient(create_app(_settings(max_upload_mb=1)))
    big = b"0" * (1024 * 1024 + 1)
    r = client.post("/api/upload", files={"image": ("big.jpg", big, "image/jpeg")})
    assert r.status_code == 413
    assert r.json()["code"] == "too_large"


def test_recognize_success_envelope() -> None:
    upstream = httpx.Response(
        200,
        json={
            "status": "success",
            "top_prediction": {"class": "Honda Civic 2019", "confidence": 1.2},
            "predictions": [
                {"class": "Honda Civic 2019", "confidence": 1.2},
                {"class": "Honda Accord", "confidence": 0.8},
            ],
        },
    )
    client, seen = _client_with_upstream(upstream)
    up = client.post("/api/upload", files={"image": ("car.jpg", _mk_jpeg_bytes(), "image/jpeg")})
    r = client.post("/api/recognize", json={"imageUrl": up.json()["imageUrl"]})
    assert r.status_code == 200
    assert r.json() == {
        "success": True,
        "data": {
            "cars": [
                {"make": "Honda", "model": "Civic", "year": "2019", "confidence": 0.6},
                {"make": "Honda", "model": "Accord", "confidence": 0.8},
            ]
        },
    }
    assert len(seen) == 1


def test_recognize_without_config_is_500_and_no_call() -> None:
    client = TestClient(create_app(_settings()))
    r = client.post("/api/recognize", json={"imageUrl": "data:image/jpeg;base64,AAAA"})
    assert r.status_code == 500
    body = r.json()
    assert body["success"] is False
    assert body["code"] == "configuration_error"
    assert "not configured" in body["error"]


def test_recognize_missing_image_url_is_400() -> None:
    client, seen = _client_with_upstream(httpx.Response(200, json={"status": "success"}))
    r = client.post("/api/recognize", json={})
    assert r.status_code == 400
    assert r.json()["error"] == "No image URL provided"
    assert seen == []


def test_recognize_malformed_body_is_400() -> None:
    client, _ = _client_with_upstream(httpx.Response(200, json={"status": "success"}))
    r = client.post(
        "/api/recognize", content=b"{not json", headers={"Content-Type": "application/json"}
    )
    assert r.status_code == 400
    assert r.json()["code"] == "invalid_input"


def test_recognize_upstream_gateway_error_is_shaped() -> None:
    client, _ = _client_with_upstream(httpx.Response(504, text="Gateway Timeout"))
    r = client.post("/api/recognize", json={"imageUrl": "data:image/jpeg;base64,AAAA"})
    assert r.status_code == 502
    assert "temporarily unavailable" in r.json()["error"]


def test_recognize_logs_structured_event() -> None:
    upstream = httpx.Response(
        200,
        json={"status": "success", "top_prediction": {"class": "Kia Rio", "confidence": 0.4}},
    )
    client, _ = _client_with_upstream(upstream)
    from car_recognition.logging import _JsonFormatter, get_logger

    logger = get_logger()
    buf = io.StringIO()
    handler = logging.StreamHandler(buf)
    handler.setFormatter(_JsonFormatter())
    logger.addHandler(handler)
    try:
        _ = client.post(
            "/api/recognize",
            json={"imageUrl": "data:image/jpeg;base64,AAAA"},
            headers={"X-Request-ID": "rid-42"},
        )
    finally:
        logger.removeHandler(handler)
    out = buf.getvalue()
    assert '"message": "recognize_finished"' in out
    assert '"cars": 1' in out
    assert '"make": "Kia"' in out
    assert '"request_id": "rid-42"' in out


def test_upload_read_failure_is_processing_error(monkeypatch: pytest.MonkeyPatch) -> None:
    async def _broken_read(self: UploadFile, size: int = -1) -> bytes:
        raise OSError("disk gone")

    monkeypatch.setattr(UploadFile, "read", _broken_read)
    client = TestClient(create_app(_settings()))
    r = client.post("/api/upload", files={"image": ("car.jpg", _mk_jpeg_bytes(), "image/jpeg")})
    assert r.status_code == 500
    body = r.json()
    assert body["code"] == "processing_error"
    assert body["error"] == "Failed to process upload"
    assert body["success"] is False
    assert "imageUrl" not in body
