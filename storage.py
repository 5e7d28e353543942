import os
import logging
from pathlib import Path

from dotenv import load_dotenv, find_dotenv
load_dotenv(find_dotenv(), override=False)

logger = logging.getLogger(__name__)

# ---------- config ----------
UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR") or "./uploads").resolve()
PUBLIC_UPLOAD_URL = (os.getenv("PUBLIC_UPLOAD_URL") or "/uploads").rstrip("/")

PROOF_BUCKET = "payment-receipts"
AVATAR_BUCKET = "profile-photos"


class StorageError(ValueError):
    """Raised for rejected uploads (safe to bubble to API)."""


def _resolve(bucket: str, path: str) -> Path:
    root = (UPLOAD_DIR / bucket).resolve()
    target = (root / path).resolve()
    if root != target and root not in target.parents:
        raise StorageError(f"invalid storage path: {path}")
    return target

FILE_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "application/pdf": "pdf",
}

def file_ext(content_type: str) -> str:
    # served by StaticFiles, which picks the MIME type from the extension
    try:
        return FILE_EXTENSIONS[content_type]
    except KeyError:
        raise StorageError("Formato de archivo no válido.")

def check_upload(data: bytes, content_type: str, max_bytes: int, allowed_types) -> None:
    if len(data) > max_bytes:
        raise StorageError(f"El archivo es demasiado grande. El tamaño máximo es {max_bytes // (1024 * 1024)} MB.")
    if content_type not in allowed_types:
        raise StorageError("Formato de archivo no válido.")

def upload(bucket: str, path: str, data: bytes) -> str:
    target = _resolve(bucket, path)
    if target.exists():
        raise StorageError(f"file already exists: {path}")
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)
    logger.info("[storage] wrote %d bytes to %s/%s", len(data), bucket, path)
    return public_url(bucket, path)

def public_url(bucket: str, path: str) -> str:
    return f"{PUBLIC_UPLOAD_URL}/{bucket}/{path}"

def remove(bucket: str, path: str) -> bool:
    target = _resolve(bucket, path)
    if not target.exists():
        return False
    target.unlink()
    logger.info("[storage] removed %s/%s", bucket, path)
    return True
