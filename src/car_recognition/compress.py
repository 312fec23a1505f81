from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Final

from PIL import Image, ImageOps, UnidentifiedImageError

from .config import CompressionConfig
from .dataurl import encode_data_url
from .errors import AppError, ErrorCode, app_error
from .logging import get_logger, log_event
from .types import MIB, CompressedImage, UploadedImage

_VERY_LARGE_MB: Final[float] = 20.0
_PIL_QUALITY_MAX: Final[int] = 95


@dataclass(frozen=True)
class CompressOptions:
    max_width_px: int = 1200
    initial_quality: float = 0.7
    quality_factor: float = 0.7
    max_attempts: int = 3
    size_headroom: float = 0.9

    @staticmethod
    def from_config(c: CompressionConfig) -> CompressOptions:
        return CompressOptions(
            max_width_px=int(c.max_width_px),
            initial_quality=float(c.initial_quality),
            quality_factor=float(c.quality_factor),
            max_attempts=int(c.max_attempts),
            size_headroom=float(c.size_headroom),
        )


def validate_upload(image: UploadedImage) -> None:
    if not image.media_type.lower().startswith("image/"):
        raise app_error(ErrorCode.invalid_input, "Please upload an image file.")


def load_image(raw: bytes) -> Image.Image:
    try:
        img = Image.open(io.BytesIO(raw))
        img.load()
    except (UnidentifiedImageError, OSError, Image.DecompressionBombError):
        raise app_error(ErrorCode.processing_error, "Error loading image") from None
    return _to_rgb(img)


def _to_rgb(img: Image.Image) -> Image.Image:
    tmp = ImageOps.exif_transpose(img)
    out: Image.Image = tmp if tmp is not None else img
    if out.mode in ("RGBA", "LA") or (out.mode == "P" and "transparency" in out.info):
        rgba = out.convert("RGBA")
        bg = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
        out = Image.alpha_composite(bg, rgba)
    if out.mode != "RGB":
        out = out.convert("RGB")
    return out


def fit_width(img: Image.Image, max_width: int) -> Image.Image:
    w, h = img.size
    if w <= max_width:
        return img
    ratio = max_width / w
    new_h = max(1, int(h * ratio))
    return img.resize((max_width, new_h), resample=Image.Resampling.LANCZOS)


def encode_jpeg(img: Image.Image, quality: float) -> bytes:
    # Map a (0, 1] quality onto Pillow's JPEG scale
    q = max(1, min(_PIL_QUALITY_MAX, int(round(quality * 100))))
    buf = io.BytesIO()
    try:
        img.save(buf, format="JPEG", quality=q, optimize=True)
    except OSError:
        raise app_error(ErrorCode.processing_error, "Could not encode image") from None
    return buf.getvalue()


def compress_step(
    img: Image.Image,
    quality: float,
    attempt: int,
    *,
    max_size_mb: float,
    opts: CompressOptions,
) -> tuple[bytes, bool]:
    """Encode once at `quality`.

    Returns the bytes and whether the loop should stop: either the result is
    within the headroom of the budget or the attempt budget is spent.
    """
    data = encode_jpeg(img, quality)
    size_mb = len(data) / MIB
    log_event(
        "compress_attempt",
        fields={"attempt": attempt, "quality": float(quality), "size_bytes": len(data)},
    )
    over = size_mb > max_size_mb * opts.size_headroom
    return data, (not over) or attempt >= opts.max_attempts


def compress_image(
    image: UploadedImage, max_size_mb: float = 5.0, opts: CompressOptions | None = None
) -> CompressedImage:
    o = opts or CompressOptions()
    validate_upload(image)
    if image.size_bytes / MIB > _VERY_LARGE_MB:
        get_logger().warning("compress_large_input size_mb=%.2f", image.size_bytes / MIB)
    src = load_image(image.data)
    img = fit_width(src, o.max_width_px)

    quality = o.initial_quality
    attempt = 1
    while True:
        data, done = compress_step(img, quality, attempt, max_size_mb=max_size_mb, opts=o)
        if done:
            break
        quality *= o.quality_factor
        attempt += 1

    out = CompressedImage(
        data=data,
        filename=image.filename,
        quality=quality,
        attempts=attempt,
        max_size_mb=max_size_mb,
        original_size=image.size_bytes,
    )
    log_event(
        "compress_finished",
        fields={
            "original_bytes": image.size_bytes,
            "size_bytes": out.size_bytes,
            "attempt": attempt,
            "quality": float(quality),
            "width": img.size[0],
            "height": img.size[1],
            "resized": img.size != src.size,
            "ratio": out.compression_ratio,
            "within_budget": out.within_budget,
        },
    )
    return out


def prepare_image(
    image: UploadedImage, max_size_mb: float = 5.0, opts: CompressOptions | None = None
) -> CompressedImage:
    """Compress `image` and fail when the result still exceeds `max_size_mb`."""
    try:
        out = compress_image(image, max_size_mb, opts)
    except AppError as err:
        if err.code is ErrorCode.invalid_input:
            raise
        raise app_error(
            ErrorCode.processing_error, "Failed to process the image. Please try a different one."
        ) from err
    if not out.within_budget:
        get_logger().warning(
            "compress_over_budget size_mb=%.2f max_mb=%.2f", out.size_mb, max_size_mb
        )
        raise app_error(
            ErrorCode.too_large,
            f"Image is too large ({out.size_mb:.1f}MB). Please try a smaller image "
            "or reduce its quality before uploading.",
        )
    return out


def preview_data_url(image: CompressedImage) -> str:
    return encode_data_url(image.data, image.media_type)
