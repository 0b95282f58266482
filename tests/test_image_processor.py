"""Tests for upload loading and content-type validation."""

from io import BytesIO

import pytest
from PIL import Image

from caption_review.exceptions import ValidationError
from caption_review.models import UploadFile
from caption_review.utils.image_processor import (
    ACCEPTED_CONTENT_TYPES,
    ImageProcessor,
    is_accepted,
    normalize_content_type,
)


def image_bytes(fmt: str) -> bytes:
    buffer = BytesIO()
    Image.new("RGB", (4, 4), color="red").save(buffer, format=fmt)
    return buffer.getvalue()


class TestContentTypes:
    """Test allow-list handling."""

    def test_allow_list(self):
        assert ACCEPTED_CONTENT_TYPES == {
            "image/jpeg",
            "image/jpg",
            "image/png",
            "image/webp",
            "image/gif",
            "image/heic",
        }

    @pytest.mark.parametrize(
        "raw, expected",
        [
            ("image/PNG", "image/png"),
            ("jpeg", "image/jpeg"),
            ("image/webp; charset=binary", "image/webp"),
            ("", ""),
        ],
    )
    def test_normalize(self, raw, expected):
        assert normalize_content_type(raw) == expected

    @pytest.mark.parametrize("content_type", ["image/bmp", "image/tiff", "application/pdf", ""])
    def test_rejected(self, content_type):
        assert not is_accepted(content_type)
        with pytest.raises(ValidationError):
            ImageProcessor.validate(UploadFile(name="f", content_type=content_type, data=b"x"))

    def test_validate_normalizes(self):
        upload = ImageProcessor.validate(UploadFile(name="f", content_type="GIF", data=b"x"))
        assert upload.content_type == "image/gif"

    def test_empty_file(self):
        with pytest.raises(ValidationError, match="empty"):
            ImageProcessor.validate(UploadFile(name="f.png", content_type="image/png", data=b""))


class TestLoad:
    """Test reading uploads from disk."""

    def test_type_from_extension(self, tmp_path):
        path = tmp_path / "cat.png"
        path.write_bytes(image_bytes("PNG"))

        upload = ImageProcessor.load(path)

        assert upload.name == "cat.png"
        assert upload.content_type == "image/png"
        assert upload.size == path.stat().st_size

    def test_type_sniffed_without_extension(self, tmp_path):
        path = tmp_path / "upload"
        path.write_bytes(image_bytes("JPEG"))

        assert ImageProcessor.load(path).content_type == "image/jpeg"

    def test_bmp_rejected(self, tmp_path):
        path = tmp_path / "picture"
        path.write_bytes(image_bytes("BMP"))

        with pytest.raises(ValidationError):
            ImageProcessor.load(path)

    def test_explicit_content_type_wins(self, tmp_path):
        path = tmp_path / "cat.png"
        path.write_bytes(image_bytes("PNG"))

        assert ImageProcessor.load(path, "image/webp").content_type == "image/webp"

    def test_sniff_unknown_bytes(self):
        assert ImageProcessor.sniff_content_type(b"not an image") is None
