from __future__ import annotations

from dataclasses import dataclass
from typing import Final

MIB: Final[int] = 1024 * 1024
DEFAULT_MEDIA_TYPE: Final[str] = "image/jpeg"


@dataclass(frozen=True)
class UploadedImage:
    data: bytes
    media_type: str
    filename: str = "image"

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass(frozen=True)
class CompressedImage:
    data: bytes
    filename: str
    quality: float
    attempts: int
    max_size_mb: float
    original_size: int
    media_type: str = DEFAULT_MEDIA_TYPE

    @property
    def size_bytes(self) -> int:
        return len(self.data)

    @property
    def size_mb(self) -> float:
        return len(self.data) / MIB

    @property
    def within_budget(self) -> bool:
        return self.size_mb <= self.max_size_mb

    @property
    def compression_ratio(self) -> float:
        if self.original_size <= 0:
            return 1.0
        return len(self.data) / self.original_size


@dataclass(frozen=True)
class DataURLReference:
    media_type: str | None
    payload: str

    @property
    def estimated_size_bytes(self) -> float:
        # base64 carries 3 bytes per 4 characters
        return len(self.payload) * 0.75


@dataclass(frozen=True)
class PredictionCandidate:
    label: str
    confidence: float


@dataclass(frozen=True)
class Car:
    make: str
    model: str
    year: str | None
    confidence: float

    @property
    def confidence_percent(self) -> float:
        return round(self.confidence * 100.0, 1)

    @property
    def confidence_tag(self) -> str | None:
        if self.confidence > 0.9:
            return "High confidence"
        if self.confidence > 0.7:
            return "Good match"
        return None

    def to_dict(self) -> dict[str, object]:
        out: dict[str, object] = {"make": self.make, "model": self.model}
        if self.year is not None:
            out["year"] = self.year
        out["confidence"] = self.confidence
        return out
