"""Upload file loading and content-type validation."""

import logging
import mimetypes
from io import BytesIO
from pathlib import Path
from typing import Optional, Union

from PIL import Image, UnidentifiedImageError

from ..exceptions import ValidationError
from ..models import UploadFile

logger = logging.getLogger(__name__)

ACCEPTED_CONTENT_TYPES = frozenset(
    {
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/webp",
        "image/gif",
        "image/heic",
    }
)

# Pillow format name -> MIME type
_PIL_FORMATS = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
    "HEIF": "image/heic",
    "BMP": "image/bmp",
    "TIFF": "image/tiff",
}

mimetypes.add_type("image/webp", ".webp")
mimetypes.add_type("image/heic", ".heic")


def normalize_content_type(content_type: str) -> str:
    """Lower-case, drop parameters and accept bare subtypes ('png' -> 'image/png')."""
    value = (content_type or "").split(";", 1)[0].strip().lower()
    if value and "/" not in value:
        value = f"image/{value}"
    return value


def is_accepted(content_type: str) -> bool:
    return normalize_content_type(content_type) in ACCEPTED_CONTENT_TYPES


class ImageProcessor:
    """Builds validated UploadFile objects."""

    @staticmethod
    def sniff_content_type(data: bytes) -> Optional[str]:
        """Detect the image format from the bytes themselves."""
        try:
            with Image.open(BytesIO(data)) as img:
                return _PIL_FORMATS.get(img.format)
        except (UnidentifiedImageError, OSError):
            return None

    @classmethod
    def guess_content_type(cls, name: str, data: bytes) -> Optional[str]:
        guessed, _ = mimetypes.guess_type(name)
        if guessed:
            return guessed
        return cls.sniff_content_type(data)

    @staticmethod
    def validate(upload: UploadFile) -> UploadFile:
        """
        Check an upload against the allow-list.

        Raises:
            ValidationError: empty file or unsupported content type
        """
        if not upload.data:
            raise ValidationError(f"File {upload.name!r} is empty")

        content_type = normalize_content_type(upload.content_type)
        if content_type not in ACCEPTED_CONTENT_TYPES:
            raise ValidationError(
                f"Invalid file type {upload.content_type!r}. "
                "Please upload a JPEG, PNG, WebP, GIF, or HEIC image."
            )

        if content_type != upload.content_type:
            return UploadFile(name=upload.name, content_type=content_type, data=upload.data)
        return upload

    @classmethod
    def load(cls, path: Union[str, Path], content_type: Optional[str] = None) -> UploadFile:
        """Read a file from disk into a validated UploadFile."""
        path = Path(path)
        data = path.read_bytes()
        content_type = content_type or cls.guess_content_type(path.name, data) or ""
        logger.debug(f"Loaded {path.name}: {len(data)} bytes, {content_type or 'unknown type'}")
        return cls.validate(UploadFile(name=path.name, content_type=content_type, data=data))
