from __future__ import annotations

import io
import os

import pytest
from PIL import Image

import hybrid_llm.core.multimodal as multimodal
from hybrid_llm.core.errors import MediaTooLargeError, ValidationError
from hybrid_llm.core.multimodal import MediaFile, MultimodalContentBuilder
from hybrid_llm.core.types import InlineDataPart, MultimodalContent, TextPart, encoded_length


def _noise_png(size: int = 256) -> bytes:
    image = Image.frombytes("RGB", (size, size), os.urandom(size * size * 3))
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def test_small_image_is_passed_through_unchanged():
    data = _noise_png(16)
    builder = MultimodalContentBuilder()

    part = builder.build_part(MediaFile(data=data, mime_type="image/png", name="tiny.png"))

    assert part == InlineDataPart(data=data, mime_type="image/png")


def test_jpg_alias_is_normalized():
    part = MultimodalContentBuilder().build_part(MediaFile(data=b"\xff\xd8", mime_type="image/jpg"))

    assert part.mime_type == "image/jpeg"


def test_oversized_image_is_compressed_under_the_message_ceiling():
    data = _noise_png()
    ceiling = 20_000
    assert encoded_length(len(data)) > ceiling
    builder = MultimodalContentBuilder(max_message_bytes=ceiling)

    part = builder.build_part(MediaFile(data=data, mime_type="image/png", name="noise.png"))

    assert part.mime_type == "image/jpeg"
    assert part.encoded_size <= ceiling
    with Image.open(io.BytesIO(part.data)) as decoded:
        assert decoded.format == "JPEG"


def test_image_over_its_own_cap_is_compressed_with_default_message_limit():
    data = _noise_png()
    cap = 20_000
    assert len(data) > cap
    builder = MultimodalContentBuilder(max_image_bytes=cap)

    part = builder.build_part(MediaFile(data=data, mime_type="image/png", name="noise.png"))

    assert part.mime_type == "image/jpeg"
    assert len(part.data) <= cap


def test_image_that_cannot_fit_raises_media_too_large():
    builder = MultimodalContentBuilder(max_message_bytes=100)

    with pytest.raises(MediaTooLargeError, match="even after compression"):
        builder.build_part(MediaFile(data=_noise_png(), mime_type="image/png", name="noise.png"))


def test_compression_unavailable_without_pillow(monkeypatch):
    monkeypatch.setattr(multimodal, "HAS_PILLOW", False)
    builder = MultimodalContentBuilder(max_message_bytes=1_000)

    with pytest.raises(MediaTooLargeError, match="compression is unavailable"):
        builder.build_part(MediaFile(data=_noise_png(), mime_type="image/png"))


def test_undecodable_image_is_rejected():
    builder = MultimodalContentBuilder(max_message_bytes=10)

    with pytest.raises(ValidationError, match="could not be decoded"):
        builder.build_part(MediaFile(data=b"not an image" * 10, mime_type="image/png", name="bad.png"))


def test_oversized_audio_is_never_compressed():
    builder = MultimodalContentBuilder(max_message_bytes=1_000)

    with pytest.raises(MediaTooLargeError, match="too large to send"):
        builder.build_part(MediaFile(data=b"\x00" * 2_000, mime_type="audio/wav", name="clip.wav"))


def test_category_limit_applies_before_encoding():
    builder = MultimodalContentBuilder(max_audio_bytes=10)

    with pytest.raises(MediaTooLargeError, match="limit for this media type"):
        builder.build_part(MediaFile(data=b"\x00" * 11, mime_type="audio/ogg"))


def test_unsupported_mime_type_is_rejected():
    with pytest.raises(ValidationError) as exc_info:
        MultimodalContentBuilder().build_part(MediaFile(data=b"%PDF", mime_type="application/pdf"))

    assert exc_info.value.kind == "unsupported_media_type"


def test_from_path_guesses_mime_type(tmp_path):
    path = tmp_path / "voice.wav"
    path.write_bytes(b"RIFF")

    media = MediaFile.from_path(path)

    assert media.mime_type in ("audio/wav", "audio/x-wav")
    assert media.name == "voice.wav"
    assert media.data == b"RIFF"


def test_wav_file_from_disk_builds_a_part(tmp_path):
    path = tmp_path / "voice.wav"
    path.write_bytes(b"RIFF\x00\x00\x00\x00WAVE")

    part = MultimodalContentBuilder().build_part(MediaFile.from_path(path))

    assert part.mime_type == "audio/wav"
    assert part.data == b"RIFF\x00\x00\x00\x00WAVE"


@pytest.mark.parametrize(
    ("alias", "expected"),
    [
        ("audio/x-wav", "audio/wav"),
        ("audio/wave", "audio/wav"),
        ("audio/vnd.wave", "audio/wav"),
        ("audio/x-mpeg", "audio/mpeg"),
        ("Audio/X-WAV; codecs=1", "audio/wav"),
    ],
)
def test_common_audio_aliases_are_normalized(alias, expected):
    part = MultimodalContentBuilder().build_part(MediaFile(data=b"\x00", mime_type=alias))

    assert part.mime_type == expected


def test_combine_preserves_order_and_wraps_strings():
    builder = MultimodalContentBuilder()
    image = InlineDataPart(data=b"\x89PNG", mime_type="image/png")

    content = builder.combine("Describe this image:", image, "Be brief.")

    assert content == MultimodalContent(
        parts=(TextPart(text="Describe this image:"), image, TextPart(text="Be brief."))
    )
    assert content.has_media
    assert content.text() == "Describe this image:\n\nBe brief."


def test_combine_rejects_empty_and_unknown_items():
    builder = MultimodalContentBuilder()

    with pytest.raises(ValidationError):
        builder.combine()
    with pytest.raises(ValidationError, match="Unsupported content item"):
        builder.combine("text", 42)


def test_check_content_enforces_limits_on_prebuilt_parts():
    builder = MultimodalContentBuilder(max_image_bytes=4)
    content = MultimodalContent(parts=(InlineDataPart(data=b"12345", mime_type="image/png"),))

    with pytest.raises(MediaTooLargeError):
        builder.check_content(content)
