import logging
from io import BytesIO
from typing import Tuple

from PIL import Image, UnidentifiedImageError

from .constants import PIL_FORMAT_MIME_TYPES

logger = logging.getLogger(__name__)


def inspect_image(data: bytes) -> Tuple[str, str]:
    """Return (mime_type, extension) of an uploaded image.

    Raises ValueError when the bytes are empty, not an image Pillow can
    decode, or an image format we do not store.
    """
    if not data:
        raise ValueError("Empty image upload")
    try:
        with Image.open(BytesIO(data)) as img:
            fmt = (img.format or '').upper()
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        logger.debug("Rejected upload that is not a readable image: %s", exc)
        raise ValueError("Uploaded file is not a valid image") from exc

    mime_type = PIL_FORMAT_MIME_TYPES.get(fmt)
    if mime_type is None:
        raise ValueError(f"Unsupported image format: {fmt or 'unknown'}")
    ext = 'jpg' if fmt == 'JPEG' else fmt.lower()
    return mime_type, ext
