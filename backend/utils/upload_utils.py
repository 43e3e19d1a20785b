import uuid
from pathlib import Path

from config import settings

ALLOWED_UPLOAD_MIME_TYPES = {
    "application/pdf",
    "image/jpeg",
    "image/png",
    "image/tiff",
    "application/json",
    "text/csv",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}
ALLOWED_UPLOAD_EXTENSIONS = {".pdf", ".jpg", ".jpeg", ".png", ".tif", ".tiff", ".json", ".csv", ".xls", ".xlsx"}
IMAGE_MIME_TYPES = {"image/jpeg", "image/png"}

_EXTENSION_MIME = {
    ".pdf": "application/pdf",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".json": "application/json",
    ".csv": "text/csv",
    ".xls": "application/vnd.ms-excel",
    ".xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

_MAGIC_SIGNATURES: list[tuple[bytes, str]] = [
    (b"%PDF-", "application/pdf"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"II*\x00", "image/tiff"),
    (b"MM\x00*", "image/tiff"),
    (b"\xd0\xcf\x11\xe0", "application/vnd.ms-excel"),
    (b"PK\x03\x04", "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"),
]


def max_upload_bytes() -> int:
    return int(settings.MAX_UPLOAD_BYTES)


def sniff_upload_format(payload: bytes) -> str | None:
    head = payload[:16]
    for magic, mime in _MAGIC_SIGNATURES:
        if head.startswith(magic):
            return mime
    return None


def validate_upload_payload(
    payload: bytes,
    *,
    filename: str | None = None,
    content_type: str | None = None,
) -> tuple[str, str]:
    """Check size and type of an uploaded lab file.

    Returns (mime type, extension). Text formats (json, csv) carry no magic
    bytes, so they are accepted on the extension alone.
    """
    if not payload:
        raise ValueError("Uploaded file is empty.")
    if len(payload) > max_upload_bytes():
        raise ValueError(f"File too large. Maximum size is {max_upload_bytes() // (1024 * 1024)}MB.")

    ext = Path(filename or "").suffix.lower()
    if ext not in ALLOWED_UPLOAD_EXTENSIONS:
        raise ValueError("Unsupported file type. Allowed formats: pdf, jpeg, png, tiff, json, csv, xls, xlsx.")
    expected = _EXTENSION_MIME[ext]

    if content_type:
        normalized = content_type.split(";")[0].strip().lower()
        if normalized == "image/jpg":
            normalized = "image/jpeg"
        if normalized not in ALLOWED_UPLOAD_MIME_TYPES and normalized != "application/octet-stream":
            raise ValueError("Unsupported file content type.")

    sniffed = sniff_upload_format(payload)
    if expected in {"application/json", "text/csv"}:
        if sniffed is not None:
            raise ValueError("File content does not match its extension.")
        return expected, ext
    if sniffed != expected:
        raise ValueError("File content does not match its extension.")
    return expected, ext


def build_storage_key(user_id: str, filename: str | None, extension: str) -> str:
    stem = Path(filename or "").stem.strip().replace(" ", "_")[:60] or "lab_result"
    safe_stem = "".join(ch for ch in stem if ch.isalnum() or ch in {"_", "-", "."}) or "lab_result"
    safe_user = "".join(ch if ch.isalnum() or ch in {"_", "-"} else "_" for ch in user_id) or "unknown"
    return f"lab-results/{safe_user}/{uuid.uuid4().hex}_{safe_stem}{extension}"


def mime_type_for(name: str | None) -> str | None:
    return _EXTENSION_MIME.get(Path(name or "").suffix.lower())
