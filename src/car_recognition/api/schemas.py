from __future__ import annotations

from pydantic.dataclasses import dataclass as pydantic_dataclass


@pydantic_dataclass(frozen=True)
class RecognizeRequest:
    imageUrl: str | None = None  # noqa: N815 - wire name


@pydantic_dataclass(frozen=True)
class UploadResponse:
    success: bool
    imageUrl: str  # noqa: N815 - wire name


@pydantic_dataclass(frozen=True)
class CarOut:
    make: str
    model: str
    confidence: float
    year: str | None = None


@pydantic_dataclass(frozen=True)
class RecognizeData:
    cars: list[CarOut]


@pydantic_dataclass(frozen=True)
class RecognizeResponse:
    success: bool
    data: RecognizeData
