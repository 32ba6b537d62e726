"""
Local-disk storage for task attachments.

Files are written to ``UPLOAD_DIR/<task_id>/<uuid><ext>`` and served back by
the ``/uploads`` static mount.
"""

import logging
import os
import uuid
from pathlib import Path
from typing import Tuple

from fastapi import HTTPException, UploadFile, status

logger = logging.getLogger(__name__)

UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", "uploads"))
URL_PREFIX = "/uploads"


def _max_upload_bytes() -> int:
    raw = os.getenv("MAX_UPLOAD_SIZE_MB", "10")
    try:
        megabytes = int(raw)
    except ValueError:
        logger.warning(f"⚠️  Invalid MAX_UPLOAD_SIZE_MB={raw}. Using default of 10.")
        megabytes = 10
    return max(1, megabytes) * 1024 * 1024


MAX_FILE_SIZE = _max_upload_bytes()
CHUNK_SIZE = 1024 * 1024

ALLOWED_EXTENSIONS = {
    ".pdf", ".txt", ".md", ".doc", ".docx",  # Documents
    ".png", ".jpg", ".jpeg", ".gif", ".webp",  # Images (no .svg, it can carry scripts)
    ".json", ".xml", ".csv", ".xls", ".xlsx",  # Data files
    ".zip", ".tar", ".gz",  # Archives
}
ALLOWED_MIME_TYPES = {
    "application/pdf",
    "text/plain", "text/markdown",
    "application/msword", "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "image/png", "image/jpeg", "image/gif", "image/webp",
    "application/json", "application/xml", "text/xml", "text/csv",
    "application/vnd.ms-excel", "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "application/zip", "application/x-tar", "application/gzip",
}


def validate_file_upload(file: UploadFile) -> None:
    """Validate file extension and MIME type."""
    if not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No file uploaded")

    file_ext = Path(file.filename).suffix.lower()
    if file_ext not in ALLOWED_EXTENSIONS:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"File type not allowed. Allowed extensions: {', '.join(sorted(ALLOWED_EXTENSIONS))}",
        )

    # Many clients send octet-stream for binary files, so the extension decides
    if file.content_type not in ALLOWED_MIME_TYPES and file.content_type != "application/octet-stream":
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"MIME type not allowed: {file.content_type}",
        )


async def save_upload_file(task_id: int, file: UploadFile) -> Tuple[str, int]:
    """
    Save an uploaded file using chunked streaming.

    Reads the upload in 1MB chunks and aborts as soon as the size limit is
    exceeded, so memory use stays bounded by the chunk size.

    Returns:
        tuple: (public file URL, file size in bytes)

    Raises:
        HTTPException: 413 if the file exceeds MAX_UPLOAD_SIZE_MB
    """
    task_dir = UPLOAD_DIR / str(task_id)
    task_dir.mkdir(parents=True, exist_ok=True)

    file_ext = Path(file.filename).suffix.lower()
    unique_filename = f"{uuid.uuid4()}{file_ext}"
    filepath = task_dir / unique_filename

    total_size = 0
    try:
        with open(filepath, "wb") as f:
            while True:
                chunk = await file.read(CHUNK_SIZE)
                if not chunk:
                    break

                total_size += len(chunk)
                if total_size > MAX_FILE_SIZE:
                    raise HTTPException(
                        status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                        detail=f"File too large. Maximum size: {MAX_FILE_SIZE / (1024 * 1024):.0f}MB",
                    )

                f.write(chunk)
    except HTTPException:
        filepath.unlink(missing_ok=True)
        raise
    except OSError as e:
        filepath.unlink(missing_ok=True)
        logger.error(f"Failed to save file: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Failed to save file: {e}")

    logger.info(f"Stored attachment for task {task_id}: {unique_filename} ({total_size} bytes)")
    return f"{URL_PREFIX}/{task_id}/{unique_filename}", total_size


def path_for_url(file_url: str) -> Path:
    """Map a stored ``/uploads/...`` URL back to its path on disk."""
    relative = file_url[len(URL_PREFIX):].lstrip("/") if file_url.startswith(URL_PREFIX) else file_url
    return UPLOAD_DIR / relative


def delete_stored_file(file_url: str) -> None:
    """Remove an attachment's file from disk; a missing file is not an error."""
    path = path_for_url(file_url)
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"⚠️  Could not delete file {path}: {e}")
