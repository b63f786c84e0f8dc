"""Attachment URL helpers shared by the uploader and message renderers."""

from typing import Optional
from urllib.parse import urlparse

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp")
STORAGE_PATH_FRAGMENTS = ("/chat-images/", "/storage/v1/", "/attachments/")

_EXTENSION_BY_TYPE = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/heic": ".heic",
    "image/heif": ".heif",
    "image/avif": ".avif",
}
_EXTENSION_ALIASES = {".jpeg": ".jpg"}


def is_attachment(body: Optional[str]) -> bool:
    """Return True when a message body is a reference to an uploaded image.

    Rows written before messages carried an explicit kind hold the public URL
    in the body, so renderers sniff for known extensions or storage paths.
    """
    if not body:
        return False
    text = body.strip()
    lower = text.lower()
    if not lower.startswith(("http://", "https://", "/attachments/")):
        return False
    path = urlparse(lower).path if lower.startswith("http") else lower
    if any(ext in path for ext in IMAGE_EXTENSIONS):
        return True
    return any(fragment in lower for fragment in STORAGE_PATH_FRAGMENTS)


def guess_extension(filename: Optional[str], content_type: Optional[str]) -> str:
    """Extension for a storage key; the validated content type beats the filename."""
    from_type = _EXTENSION_BY_TYPE.get((content_type or "").split(";")[0].strip().lower(), "")
    from_name = ""
    if filename and "." in filename:
        ext = filename.rsplit(".", 1)[-1].strip().lower()
        if ext and ext.isalnum():
            from_name = "." + ext
    if from_type:
        # Keep the uploader's spelling only when it names the same format (.jpeg vs .jpg)
        return from_name if _EXTENSION_ALIASES.get(from_name, from_name) == from_type else from_type
    return from_name if from_name in IMAGE_EXTENSIONS else ""


def mime_from_url(url: Optional[str]) -> Optional[str]:
    """Best-effort content type for an attachment URL without a stored hint."""
    if not url:
        return None
    path = urlparse(url).path.lower()
    for content_type, ext in _EXTENSION_BY_TYPE.items():
        if path.endswith(ext):
            return content_type
    if path.endswith(".jpeg"):
        return "image/jpeg"
    return None
