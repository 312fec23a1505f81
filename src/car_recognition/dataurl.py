from __future__ import annotations

import base64
import binascii
from typing import Final

from .errors import ErrorCode, app_error
from .types import DEFAULT_MEDIA_TYPE, DataURLReference

_ASCII_WHITESPACE: Final[dict[int, None]] = dict.fromkeys(map(ord, " \t\n\r\f"))


def encode_data_url(raw: bytes, media_type: str) -> str:
    b64 = base64.b64encode(raw).decode("ascii")
    return f"data:{media_type};base64,{b64}"


def parse_data_url(url: str) -> DataURLReference:
    """Split an image data URL into media type and base64 payload.

    Strings that do not start with `data:image` are taken as a bare base64
    payload with no declared media type.
    """
    if not url.startswith("data:image"):
        return DataURLReference(media_type=None, payload=url)
    header, _, payload = url.partition(",")
    media_type = header[len("data:") :].split(";", 1)[0].strip()
    return DataURLReference(media_type=media_type or None, payload=payload)


def media_type_or_default(ref: DataURLReference) -> str:
    if ref.media_type and "/" in ref.media_type:
        return ref.media_type
    return DEFAULT_MEDIA_TYPE


def decode_payload(ref: DataURLReference) -> bytes:
    """Decode the payload, tolerating ASCII whitespace and missing `=` padding."""
    compact = ref.payload.translate(_ASCII_WHITESPACE)
    compact += "=" * (-len(compact) % 4)
    try:
        return base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError):
        raise app_error(ErrorCode.invalid_input, "Image data is not valid base64") from None
