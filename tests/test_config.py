from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pytest

from car_recognition.config import Settings


def _load_with_env(env: dict[str, str]) -> Settings:
    # Swap os.environ wholesale so Settings.load sees exactly `env`
    old = os.environ.copy()
    try:
        os.environ.clear()
        for k, v in env.items():
            os.environ[k] = v
        return Settings.load()
    finally:
        os.environ.clear()
        for k, v in old.items():
            os.environ[k] = v


def _env_without_toml(td: str) -> dict[str, str]:
    env = {k: v for k, v in os.environ.items() if not k.startswith(("RECOGNITION__", "APP__"))}
    env.pop("CAR_RECOGNITION_API_URL", None)
    env["CAR_RECOGNITION_CONFIG"] = (Path(td) / "missing.toml").as_posix()
    return env


def test_defaults_match_documented_limits() -> None:
    s = Settings.defaults()
    assert s.recognition.api_url == ""
    assert s.recognition.configured is False
    assert s.recognition.timeout_seconds == 30.0
    assert s.recognition.max_payload_bytes == 10 * 1024 * 1024
    assert s.compression.max_width_px == 1200
    assert s.compression.initial_quality == 0.7
    assert s.compression.quality_factor == 0.7
    assert s.compression.max_attempts == 3


def test_app_port_out_of_range_raises() -> None:
    with tempfile.TemporaryDirectory() as td:
        env = _env_without_toml(td)
        env["APP__PORT"] = "70000"
        with pytest.raises(RuntimeError):
            _ = _load_with_env(env)


def test_legacy_api_url_variable_is_accepted() -> None:
    with tempfile.TemporaryDirectory() as td:
        env = _env_without_toml(td)
        env["CAR_RECOGNITION_API_URL"] = " http://legacy.example/predict "
        s = _load_with_env(env)
        assert s.recognition.api_url == "http://legacy.example/predict"
        assert s.recognition.configured


def test_prefixed_api_url_wins_over_legacy_name() -> None:
    with tempfile.TemporaryDirectory() as td:
        env = _env_without_toml(td)
        env["CAR_RECOGNITION_API_URL"] = "http://legacy.example"
        env["RECOGNITION__API_URL"] = "http://new.example"
        s = _load_with_env(env)
        assert s.recognition.api_url == "http://new.example"


def test_env_overrides_happy_paths() -> None:
    with tempfile.TemporaryDirectory() as td:
        env = _env_without_toml(td)
        env["RECOGNITION__TIMEOUT_SECONDS"] = "2.5"
        env["RECOGNITION__MAX_PAYLOAD_MB"] = "3"
        env["UPLOAD__MAX_UPLOAD_MB"] = "4"
        env["COMPRESSION__MAX_ATTEMPTS"] = "5"
        env["COMPRESSION__INITIAL_QUALITY"] = "0.8"
        s = _load_with_env(env)
        assert s.recognition.timeout_seconds == 2.5
        assert s.recognition.max_payload_mb == 3
        assert s.upload.max_upload_bytes == 4 * 1024 * 1024
        assert s.compression.max_attempts == 5
        assert abs(s.compression.initial_quality - 0.8) < 1e-9


def test_env_invalid_values_raise() -> None:
    with tempfile.TemporaryDirectory() as td:
        env = _env_without_toml(td)
        env["RECOGNITION__TIMEOUT_SECONDS"] = "soon"
        with pytest.raises(RuntimeError):
            _ = _load_with_env(env)
        env = _env_without_toml(td)
        env["COMPRESSION__QUALITY_FACTOR"] = "1.5"
        with pytest.raises(RuntimeError):
            _ = _load_with_env(env)


def test_toml_overrides_env() -> None:
    with tempfile.TemporaryDirectory() as td:
        p = Path(td) / "cfg.toml"
        p.write_text(
            """
[recognition]
api_url = "http://toml.example/predict"
timeout_seconds = 12

[compression]
max_width_px = 800
""".strip(),
            encoding="utf-8",
        )
        env = _env_without_toml(td)
        env["RECOGNITION__API_URL"] = "http://env.example"
        env["CAR_RECOGNITION_CONFIG"] = p.as_posix()
        s = _load_with_env(env)
        assert s.recognition.api_url == "http://toml.example/predict"
        assert s.recognition.timeout_seconds == 12.0
        assert s.compression.max_width_px == 800


def test_invalid_toml_raises_runtime_error() -> None:
    with tempfile.TemporaryDirectory() as td:
        p = Path(td) / "cfg.toml"
        p.write_text("[recognition\napi_url = ", encoding="utf-8")
        env = _env_without_toml(td)
        env["CAR_RECOGNITION_CONFIG"] = p.as_posix()
        with pytest.raises(RuntimeError):
            _ = _load_with_env(env)
