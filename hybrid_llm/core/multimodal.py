from __future__ import annotations

import importlib
import importlib.util
import io
import logging
import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import MediaTooLargeError, ValidationError
from .types import InlineDataPart, MultimodalContent, Part, TextPart, encoded_length

logger = logging.getLogger(__name__)

Image: Any = None
if importlib.util.find_spec("PIL") is not None:
    Image = importlib.import_module("PIL.Image")
HAS_PILLOW = Image is not None

SUPPORTED_IMAGE_TYPES = frozenset({"image/png", "image/jpeg", "image/webp"})
SUPPORTED_AUDIO_TYPES = frozenset(
    {"audio/wav", "audio/mpeg", "audio/mp3", "audio/webm", "audio/ogg"}
)
SUPPORTED_MIME_TYPES = SUPPORTED_IMAGE_TYPES | SUPPORTED_AUDIO_TYPES

# Names that mimetypes and browsers report for the supported formats.
_MIME_ALIASES = {
    "image/jpg": "image/jpeg",
    "audio/x-wav": "audio/wav",
    "audio/wave": "audio/wav",
    "audio/vnd.wave": "audio/wav",
    "audio/x-mpeg": "audio/mpeg",
}

DEFAULT_MAX_IMAGE_BYTES = 5 * 1024 * 1024
DEFAULT_MAX_AUDIO_BYTES = 25 * 1024 * 1024
DEFAULT_MAX_MESSAGE_BYTES = 32 * 1024 * 1024

_QUALITY_STEPS = (85, 70, 55, 40)
_SCALE_STEP = 0.75
_MIN_DIMENSION = 64


@dataclass(slots=True)
class MediaFile:
    data: bytes
    mime_type: str
    name: str | None = None

    @classmethod
    def from_path(cls, path: str | Path) -> MediaFile:
        resolved = Path(path)
        mime_type, _ = mimetypes.guess_type(resolved.name)
        if mime_type is None:
            raise ValidationError(message=f"Cannot determine the MIME type of {resolved.name}.")
        return cls(data=resolved.read_bytes(), mime_type=mime_type, name=resolved.name)


class MultimodalContentBuilder:
    """Validate, encode and combine media into content parts."""

    def __init__(
        self,
        *,
        max_image_bytes: int = DEFAULT_MAX_IMAGE_BYTES,
        max_audio_bytes: int = DEFAULT_MAX_AUDIO_BYTES,
        max_message_bytes: int = DEFAULT_MAX_MESSAGE_BYTES,
    ) -> None:
        self.max_image_bytes = max_image_bytes
        self.max_audio_bytes = max_audio_bytes
        self.max_message_bytes = max_message_bytes

    def build_part(self, file: MediaFile) -> InlineDataPart:
        mime_type = _normalize_mime(file.mime_type)
        data = file.data

        if mime_type in SUPPORTED_IMAGE_TYPES:
            # Images are checked against their own cap after compression.
            if not self._image_fits(len(data)):
                data, mime_type = self._compress_image(data, file)
            return InlineDataPart(data=data, mime_type=mime_type)

        self._check_category_limit(mime_type, len(data), file.name)
        if encoded_length(len(data)) > self.max_message_bytes:
            raise MediaTooLargeError(
                message=(
                    f"{_label(file)} is too large to send: its encoded size exceeds "
                    f"{self.max_message_bytes} bytes."
                ),
            )
        return InlineDataPart(data=data, mime_type=mime_type)

    def combine(self, *items: str | Part) -> MultimodalContent:
        if not items:
            raise ValidationError(message="Multimodal content needs at least one part.")

        parts: list[Part] = []
        for item in items:
            if isinstance(item, str):
                parts.append(TextPart(text=item))
            elif isinstance(item, (TextPart, InlineDataPart)):
                parts.append(item)
            else:
                raise ValidationError(
                    message=f"Unsupported content item of type {type(item).__name__}.",
                )

        return MultimodalContent(parts=tuple(parts))

    def check_content(self, content: MultimodalContent) -> None:
        """Validate parts that did not come through ``build_part``."""

        if not content.parts:
            raise ValidationError(message="content must contain at least one part.")

        for part in content.parts:
            if isinstance(part, InlineDataPart):
                mime_type = _normalize_mime(part.mime_type)
                self._check_category_limit(mime_type, len(part.data), None)

    def _check_category_limit(self, mime_type: str, size: int, name: str | None) -> None:
        limit = (
            self.max_image_bytes
            if mime_type in SUPPORTED_IMAGE_TYPES
            else self.max_audio_bytes
        )
        if size > limit:
            raise MediaTooLargeError(
                message=(
                    f"{name or mime_type} is {size} bytes; the limit for this media "
                    f"type is {limit} bytes."
                ),
            )

    def _image_fits(self, size: int) -> bool:
        return size <= self.max_image_bytes and encoded_length(size) <= self.max_message_bytes

    def _image_limits(self) -> str:
        return f"{self.max_image_bytes} bytes raw, {self.max_message_bytes} bytes encoded"

    def _compress_image(self, data: bytes, file: MediaFile) -> tuple[bytes, str]:
        if not HAS_PILLOW:
            raise MediaTooLargeError(
                message=(
                    f"{_label(file)} exceeds the image limit ({self._image_limits()}) and "
                    "image compression is unavailable in this environment."
                ),
            )

        try:
            with Image.open(io.BytesIO(data)) as opened:
                image = opened.convert("RGB")
        except OSError as exc:
            raise ValidationError(message=f"{_label(file)} could not be decoded: {exc}") from exc

        width, height = image.size
        scale = 1.0
        while min(width * scale, height * scale) >= _MIN_DIMENSION:
            candidate = image
            if scale < 1.0:
                candidate = image.resize(
                    (max(1, int(width * scale)), max(1, int(height * scale))),
                    Image.LANCZOS,
                )

            for quality in _QUALITY_STEPS:
                buffer = io.BytesIO()
                candidate.save(buffer, format="JPEG", quality=quality, optimize=True)
                encoded = buffer.getvalue()
                if self._image_fits(len(encoded)):
                    logger.info(
                        "Compressed %s from %d to %d bytes (quality=%d, size=%dx%d)",
                        _label(file),
                        len(data),
                        len(encoded),
                        quality,
                        candidate.size[0],
                        candidate.size[1],
                    )
                    return encoded, "image/jpeg"

            scale *= _SCALE_STEP

        raise MediaTooLargeError(
            message=(
                f"{_label(file)} is too large even after compression "
                f"({self._image_limits()})."
            ),
        )


def _normalize_mime(mime_type: str) -> str:
    normalized = (mime_type or "").split(";", 1)[0].strip().lower()
    normalized = _MIME_ALIASES.get(normalized, normalized)
    if normalized not in SUPPORTED_MIME_TYPES:
        supported = ", ".join(sorted(SUPPORTED_MIME_TYPES))
        raise ValidationError(
            message=f"Unsupported MIME type '{mime_type}'. Supported types: {supported}.",
            kind="unsupported_media_type",
        )
    return normalized


def _label(file: MediaFile) -> str:
    return file.name or file.mime_type
