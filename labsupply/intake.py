"""
File intake: turn local files or in-memory uploads into ImageUpload objects.

Validates extension, detected media type and size before anything is queued.
BMP and TIFF images are re-encoded as PNG, since the vision endpoint only
accepts PNG, JPEG, GIF and WebP.
"""

import mimetypes
from io import BytesIO
from pathlib import Path
from typing import Iterable, List, Optional

from PIL import Image, UnidentifiedImageError

from labsupply.errors import IntakeError
from labsupply.logger import get_logger
from labsupply.models import ImageUpload

logger = get_logger(__name__)

ALLOWED_EXTENSIONS = [".png", ".jpg", ".jpeg", ".gif", ".webp", ".bmp", ".tif", ".tiff"]
DEFAULT_MAX_SIZE_MB = 20

# Media types the vision endpoint accepts as-is
SERVICE_MEDIA_TYPES = {"image/png", "image/jpeg", "image/gif", "image/webp"}
# Media types converted to PNG before queuing
CONVERTED_MEDIA_TYPES = {"image/bmp", "image/tiff"}

# mimetypes does not know .webp on every platform
_EXTRA_TYPES = {
    ".webp": "image/webp",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".bmp": "image/bmp",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
}
_TYPE_ALIASES = {"image/jpg": "image/jpeg", "image/x-ms-bmp": "image/bmp", "image/x-bmp": "image/bmp"}
# Modes PNG can store without conversion
_PNG_MODES = {"1", "L", "LA", "P", "RGB", "RGBA", "I", "I;16"}


def _normalize_type(media_type: Optional[str]) -> Optional[str]:
    if not media_type:
        return None
    media_type = media_type.lower()
    return _TYPE_ALIASES.get(media_type, media_type)


def detect_media_type(filename: str, declared: Optional[str] = None) -> str:
    """
    Return the image media type for *filename*.

    A declared type (browser upload) wins when it is a supported image type;
    otherwise the extension decides. Raises IntakeError for anything else.
    """
    declared = _normalize_type(declared)
    if declared in SERVICE_MEDIA_TYPES or declared in CONVERTED_MEDIA_TYPES:
        return declared

    suffix = Path(filename).suffix.lower()
    if suffix not in ALLOWED_EXTENSIONS:
        if declared and declared.startswith("image/"):
            raise IntakeError(f"Unsupported image type '{declared}'", filename=filename)
        raise IntakeError(f"Unsupported file type '{suffix or filename}'", filename=filename)

    guessed, _ = mimetypes.guess_type(filename)
    media_type = _EXTRA_TYPES.get(suffix) or _normalize_type(guessed)
    if media_type not in SERVICE_MEDIA_TYPES and media_type not in CONVERTED_MEDIA_TYPES:
        raise IntakeError(f"Cannot determine image type of '{filename}'", filename=filename)
    return media_type


def convert_to_png(data: bytes, filename: str) -> bytes:
    """Re-encode the first frame of an image as PNG."""
    try:
        with Image.open(BytesIO(data)) as img:
            img.seek(0)
            frame = img if img.mode in _PNG_MODES else img.convert("RGBA" if "A" in img.getbands() else "RGB")
            buffer = BytesIO()
            frame.save(buffer, format="PNG")
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise IntakeError(f"Cannot read image '{filename}': {exc}", filename=filename) from exc
    logger.debug("Converted %s to PNG (%d -> %d bytes)", filename, len(data), buffer.tell())
    return buffer.getvalue()


def build_upload(
    filename: str,
    data: bytes,
    declared_type: Optional[str] = None,
    max_size_mb: int = DEFAULT_MAX_SIZE_MB,
) -> ImageUpload:
    """Validate raw bytes and wrap them as an ImageUpload."""
    if not data:
        raise IntakeError(f"File '{filename}' is empty", filename=filename)

    max_bytes = max_size_mb * 1024 * 1024
    if len(data) > max_bytes:
        size_mb = len(data) / (1024 * 1024)
        logger.warning("File %s rejected: size %d bytes exceeds limit %d", filename, len(data), max_bytes)
        raise IntakeError(
            f"File '{filename}' is too large ({size_mb:.1f}MB). Maximum allowed size is {max_size_mb}MB.",
            filename=filename,
        )

    media_type = detect_media_type(filename, declared_type)
    if media_type in CONVERTED_MEDIA_TYPES:
        data = convert_to_png(data, filename)
        media_type = "image/png"
    return ImageUpload(filename=filename, data=data, media_type=media_type)


def load_upload(path: str, max_size_mb: int = DEFAULT_MAX_SIZE_MB) -> ImageUpload:
    """Read an image file from disk."""
    file_path = Path(path)
    # Reject by extension before reading the file
    detect_media_type(file_path.name)
    try:
        data = file_path.read_bytes()
    except OSError as exc:
        raise IntakeError(f"Cannot read '{file_path.name}': {exc}", filename=file_path.name) from exc
    return build_upload(file_path.name, data, max_size_mb=max_size_mb)


def collect_image_paths(inputs: Iterable[str]) -> List[str]:
    """
    Expand files and directories into a sorted list of image paths.

    Directories are walked recursively; non-image files are skipped.
    """
    collected: List[str] = []
    for raw in inputs:
        path = Path(raw).expanduser()
        if path.is_dir():
            for child in sorted(path.rglob("*")):
                if child.is_file() and child.suffix.lower() in ALLOWED_EXTENSIONS:
                    collected.append(str(child))
        elif path.is_file():
            collected.append(str(path))
        else:
            logger.warning("Input not found: %s", raw)
    return collected
