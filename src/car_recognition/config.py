from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/car_recognition.toml")
_MIB: Final[int] = 1024 * 1024


@dataclass(frozen=True)
class AppConfig:
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass(frozen=True)
class RecognitionConfig:
    # Empty string means the recognition endpoint is not configured
    api_url: str = ""
    timeout_seconds: float = 30.0
    max_payload_mb: int = 10

    @property
    def configured(self) -> bool:
        return self.api_url.strip() != ""

    @property
    def max_payload_bytes(self) -> int:
        return int(self.max_payload_mb) * _MIB


@dataclass(frozen=True)
class UploadConfig:
    max_upload_mb: int = 10

    @property
    def max_upload_bytes(self) -> int:
        return int(self.max_upload_mb) * _MIB


@dataclass(frozen=True)
class CompressionConfig:
    max_size_mb: float = 5.0
    max_width_px: int = 1200
    initial_quality: float = 0.7
    quality_factor: float = 0.7
    max_attempts: int = 3
    size_headroom: float = 0.9


@dataclass(frozen=True)
class Settings:
    app: AppConfig
    recognition: RecognitionConfig
    upload: UploadConfig
    compression: CompressionConfig

    @classmethod
    def defaults(cls) -> Settings:
        return cls(
            app=AppConfig(),
            recognition=RecognitionConfig(),
            upload=UploadConfig(),
            compression=CompressionConfig(),
        )

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("CAR_RECOGNITION_CONFIG")
        if env_val:
            return Path(env_val)
        return _DEFAULT_CONFIG_PATH

    @classmethod
    def load(cls) -> Settings:
        # Load env first, then override from TOML if present.
        base = cls(
            app=_load_app_from_env(),
            recognition=_load_recognition_from_env(),
            upload=_load_upload_from_env(),
            compression=_load_compression_from_env(),
        )
        cfg_path = cls._toml_path()
        if not cfg_path.exists():
            return base
        try:
            raw: object = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise RuntimeError(f"Failed to read config TOML: {cfg_path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"Invalid TOML config: {cfg_path}") from exc
        return cls(
            app=_merge_app(base.app, _toml_table(raw, "app")),
            recognition=_merge_recognition(base.recognition, _toml_table(raw, "recognition")),
            upload=_merge_upload(base.upload, _toml_table(raw, "upload")),
            compression=_merge_compression(base.compression, _toml_table(raw, "compression")),
        )


def _check_port(p: int) -> int:
    if not (1 <= p <= 65535):
        raise RuntimeError("port out of range")
    return p


def _positive_float(name: str, raw: str) -> float:
    try:
        val = float(raw)
    except ValueError:
        raise RuntimeError(f"{name} must be a number") from None
    if val <= 0.0:
        raise RuntimeError(f"{name} must be positive")
    return val


def _positive_int(name: str, raw: str) -> int:
    if not raw.strip().isdigit() or int(raw) <= 0:
        raise RuntimeError(f"{name} must be a positive integer")
    return int(raw)


def _unit_fraction(name: str, raw: str) -> float:
    val = _positive_float(name, raw)
    if val > 1.0:
        raise RuntimeError(f"{name} must be within (0, 1]")
    return val


def _load_app_from_env() -> AppConfig:
    a = AppConfig()
    host = os.getenv("APP__HOST")
    pt = os.getenv("APP__PORT")
    if host:
        a = replace(a, host=host)
    if pt is not None and pt.isdigit():
        a = replace(a, port=_check_port(int(pt)))
    return a


def _load_recognition_from_env() -> RecognitionConfig:
    r = RecognitionConfig()
    # RECOGNITION__API_URL wins over the legacy variable name
    url = os.getenv("RECOGNITION__API_URL") or os.getenv("CAR_RECOGNITION_API_URL")
    to = os.getenv("RECOGNITION__TIMEOUT_SECONDS")
    mp = os.getenv("RECOGNITION__MAX_PAYLOAD_MB")
    if url:
        r = replace(r, api_url=url.strip())
    if to is not None:
        r = replace(r, timeout_seconds=_positive_float("RECOGNITION__TIMEOUT_SECONDS", to))
    if mp is not None:
        r = replace(r, max_payload_mb=_positive_int("RECOGNITION__MAX_PAYLOAD_MB", mp))
    return r


def _load_upload_from_env() -> UploadConfig:
    u = UploadConfig()
    mu = os.getenv("UPLOAD__MAX_UPLOAD_MB")
    if mu is not None:
        u = replace(u, max_upload_mb=_positive_int("UPLOAD__MAX_UPLOAD_MB", mu))
    return u


def _load_compression_from_env() -> CompressionConfig:
    c = CompressionConfig()
    ms = os.getenv("COMPRESSION__MAX_SIZE_MB")
    mw = os.getenv("COMPRESSION__MAX_WIDTH_PX")
    iq = os.getenv("COMPRESSION__INITIAL_QUALITY")
    qf = os.getenv("COMPRESSION__QUALITY_FACTOR")
    ma = os.getenv("COMPRESSION__MAX_ATTEMPTS")
    if ms is not None:
        c = replace(c, max_size_mb=_positive_float("COMPRESSION__MAX_SIZE_MB", ms))
    if mw is not None:
        c = replace(c, max_width_px=_positive_int("COMPRESSION__MAX_WIDTH_PX", mw))
    if iq is not None:
        c = replace(c, initial_quality=_unit_fraction("COMPRESSION__INITIAL_QUALITY", iq))
    if qf is not None:
        c = replace(c, quality_factor=_unit_fraction("COMPRESSION__QUALITY_FACTOR", qf))
    if ma is not None:
        c = replace(c, max_attempts=_positive_int("COMPRESSION__MAX_ATTEMPTS", ma))
    return c


def _merge_app(base: AppConfig, data: dict[str, object]) -> AppConfig:
    out = base
    if "host" in data:
        out = replace(out, host=str(data["host"]))
    if "port" in data:
        out = replace(out, port=_check_port(int(str(data["port"]))))
    return out


def _merge_recognition(base: RecognitionConfig, data: dict[str, object]) -> RecognitionConfig:
    out = base
    if "api_url" in data:
        out = replace(out, api_url=str(data["api_url"]).strip())
    if "timeout_seconds" in data:
        out = replace(
            out, timeout_seconds=_positive_float("timeout_seconds", str(data["timeout_seconds"]))
        )
    if "max_payload_mb" in data:
        out = replace(
            out, max_payload_mb=_positive_int("max_payload_mb", str(data["max_payload_mb"]))
        )
    return out


def _merge_upload(base: UploadConfig, data: dict[str, object]) -> UploadConfig:
    out = base
    if "max_upload_mb" in data:
        out = replace(out, max_upload_mb=_positive_int("max_upload_mb", str(data["max_upload_mb"])))
    return out


def _merge_compression(base: CompressionConfig, data: dict[str, object]) -> CompressionConfig:
    out = base
    if "max_size_mb" in data:
        out = replace(out, max_size_mb=_positive_float("max_size_mb", str(data["max_size_mb"])))
    if "max_width_px" in data:
        out = replace(out, max_width_px=_positive_int("max_width_px", str(data["max_width_px"])))
    if "initial_quality" in data:
        out = replace(
            out, initial_quality=_unit_fraction("initial_quality", str(data["initial_quality"]))
        )
    if "quality_factor" in data:
        out = replace(
            out, quality_factor=_unit_fraction("quality_factor", str(data["quality_factor"]))
        )
    if "max_attempts" in data:
        out = replace(out, max_attempts=_positive_int("max_attempts", str(data["max_attempts"])))
    return out


def _toml_table(raw: object, key: str) -> dict[str, object]:
    if isinstance(raw, dict):
        tab: object = raw.get(key, {})
        if isinstance(tab, dict):
            return {str(k): v for k, v in tab.items()}
    return {}
