"""Upload validation and temporary storage for thermostat photos.

Uploads are streamed to the upload directory, checked against the MIME
allow-list and size ceiling, and always removed again once the request is
finished.
"""

import base64
import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from fastapi import UploadFile

from hvac_owl.config import get_settings

logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


class UploadValidationError(Exception):
    """Raised when the request input violates an upload constraint."""

    def __init__(self, error: str, details: Optional[str] = None):
        super().__init__(error if details is None else f"{error}: {details}")
        self.error = error
        self.details = details


@dataclass(frozen=True)
class StoredUpload:
    """An uploaded image written to local disk."""

    path: Path
    original_name: str
    mime_type: str
    size: int

    def data_uri(self) -> str:
        """Inline the file as a base64 data URI for the vision model."""
        encoded = base64.b64encode(self.path.read_bytes()).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


def require_input(description: Optional[str], files: Sequence[UploadFile]) -> None:
    """Reject requests that carry neither a description nor images."""
    if not (description and description.strip()) and not files:
        raise UploadValidationError("No thermostat description or images provided")


def _safe_name(filename: Optional[str]) -> str:
    name = Path(filename or "upload").name
    return re.sub(r"[^A-Za-z0-9._-]", "_", name) or "upload"


class UploadStore:
    """Validates and stores the images of one request."""

    def __init__(
        self,
        upload_dir: Optional[str] = None,
        max_files: Optional[int] = None,
        max_bytes: Optional[int] = None,
        allowed_types: Optional[Sequence[str]] = None,
    ):
        """Initialize the store.

        Args:
            upload_dir: Directory uploads are written to. Defaults to config value.
            max_files: Maximum number of images per request. Defaults to config value.
            max_bytes: Maximum size of a single image. Defaults to config value.
            allowed_types: Accepted MIME types. Defaults to config value.
        """
        settings = get_settings()
        self.upload_dir = Path(upload_dir or settings.upload_dir)
        self.max_files = max_files or settings.max_upload_files
        self.max_bytes = max_bytes or settings.max_upload_bytes
        self.allowed_types = tuple(allowed_types or settings.allowed_mime_types)
        self.files: list[StoredUpload] = []

    @property
    def max_megabytes(self) -> str:
        return f"{self.max_bytes / (1024 * 1024):g}MB"

    async def save_all(self, uploads: Sequence[UploadFile]) -> list[StoredUpload]:
        """Validate and write every upload to disk.

        Raises:
            UploadValidationError: On too many files, a bad MIME type or an
                oversized file. Files already written are removed first.
        """
        if len(uploads) > self.max_files:
            raise UploadValidationError(
                "Too many files", f"Maximum of {self.max_files} images per request."
            )

        try:
            for upload in uploads:
                self.files.append(await self._save(upload))
        except Exception:
            self.cleanup()
            raise

        logger.info(f"Stored {len(self.files)} uploads in {self.upload_dir}")
        return list(self.files)

    async def _save(self, upload: UploadFile) -> StoredUpload:
        mime_type = (upload.content_type or "").lower()
        if mime_type not in self.allowed_types:
            raise UploadValidationError(
                "Invalid file type", "Only JPG, PNG and HEIC files are allowed."
            )

        self.upload_dir.mkdir(parents=True, exist_ok=True)
        path = self.upload_dir / (
            f"{int(time.time() * 1000)}-{len(self.files)}-{_safe_name(upload.filename)}"
        )
        size = 0
        try:
            with open(path, "wb") as f:
                while True:
                    chunk = await upload.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    size += len(chunk)
                    if size > self.max_bytes:
                        raise UploadValidationError(
                            "File too large", f"Maximum file size is {self.max_megabytes}."
                        )
                    f.write(chunk)
        except Exception:
            path.unlink(missing_ok=True)
            raise

        return StoredUpload(
            path=path,
            original_name=upload.filename or path.name,
            mime_type=mime_type,
            size=size,
        )

    def cleanup(self) -> None:
        """Remove every stored file. Failures are logged, never raised."""
        for stored in self.files:
            try:
                stored.path.unlink(missing_ok=True)
            except OSError as e:
                logger.error(f"Error cleaning up {stored.path}: {e}")
        if self.files:
            logger.info(f"Cleaned up {len(self.files)} uploaded files")
        self.files = []

    def __enter__(self) -> "UploadStore":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit with cleanup."""
        self.cleanup()
