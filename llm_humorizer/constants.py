"""Global constants for codes, uploads and file type definitions."""
from urllib.parse import unquote

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
SHARE_CODE_LENGTH = 6
ADMIN_CODE_LENGTH = 8
MAX_CODE_GENERATION_ATTEMPTS = 5

IMAGE_EXTENSIONS = {"jpg", "jpeg", "png", "webp", "gif", "bmp", "tiff", "heic", "heif"}

# Pillow format name -> mime type
PIL_FORMAT_MIME_TYPES = {
    "JPEG": "image/jpeg",
    "PNG": "image/png",
    "WEBP": "image/webp",
    "GIF": "image/gif",
    "BMP": "image/bmp",
    "TIFF": "image/tiff",
}

MAX_FILENAME_LENGTH = 255
MAX_USERNAME_LENGTH = 80
MAX_GALLERY_NAME_LENGTH = 120
DEFAULT_MAX_UPLOAD_BYTES = 10 * 1024 * 1024

QUARANTINE_HOURS = 24

MAX_WEBDAV_RETRY_ATTEMPTS = 3
INITIAL_WEBDAV_BACKOFF = 0.5

ACTOR_COOKIE = "humorizer_actor"
SESSION_COOKIE = "humorizer_session"


def _get_extension(filename: str) -> str:
    """Extract file extension safely."""
    ext = str(filename).lower().split('.')[-1] if '.' in filename else ''
    return ext


def is_image(filename: str) -> bool:
    """Check if file is an image."""
    ext = _get_extension(filename)
    return ext in IMAGE_EXTENSIONS


def mime_type_for_extension(ext: str) -> str:
    ext = ext.lower()
    mime_types = {
        'jpg': 'image/jpeg',
        'jpeg': 'image/jpeg',
        'png': 'image/png',
        'webp': 'image/webp',
        'gif': 'image/gif',
        'bmp': 'image/bmp',
        'tiff': 'image/tiff',
        'heic': 'image/heic',
        'heif': 'image/heif',
    }
    return mime_types.get(ext, 'application/octet-stream')


def normalize_code(code: str) -> str:
    """Codes are entered by humans: trim and upper-case."""
    return (code or '').strip().upper()


def sanitize_filename(filename: str) -> str:
    """Sanitize filename to prevent path traversal attacks.

    Decodes URL-encoded characters, keeps only the last path component and
    strips leading dots and slashes.
    """
    filename = unquote(filename)

    sanitized = filename.split('/')[-1].split('\\')[-1]
    sanitized = sanitized.lstrip('.' + '/\\')

    if len(sanitized) > MAX_FILENAME_LENGTH:
        raise ValueError(f"Invalid filename: exceeds maximum length of {MAX_FILENAME_LENGTH}")

    dangerous_chars = set('<>:"|?*\x00\x01\x02\x03\x04\x05\x06\x07\x08\x09\x0a\x0b\x0c\x0d\x0e\x0f')
    sanitized = ''.join(c for c in sanitized if c not in dangerous_chars)

    if not sanitized:
        raise ValueError("Invalid filename: empty after sanitization")

    return sanitized
