"""
Upload handling for image attachments.

Validates the attachment (extension, size) and persists it in the shared
upload directory under a collision-resistant name. The stored file is handed
to the relay and removed afterwards; anything left behind is reclaimed by the
ResourceJanitor.
"""

import asyncio
import re
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Union

from starlette.datastructures import UploadFile

from relay.errors import FileError, ValidationError
from relay.observability.logging import get_logger


logger = get_logger(__name__)


@dataclass(frozen=True)
class StoredUpload:
    """An attachment written to the upload directory."""
    path: Path
    original_name: str
    size: int


@dataclass(frozen=True)
class ValidatedUpload:
    """An attachment that passed validation and is held in memory."""
    original_name: str
    content: bytes


class UploadStore:
    """Validates and writes inbound image attachments.

    Validation (read) and persistence (write) are separate steps so a
    rejected attachment never reaches admission control or the disk.
    """

    def __init__(
        self,
        directory: Union[str, Path],
        max_bytes: int = 5 * 1024 * 1024,
        allowed_extensions: Iterable[str] = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp"),
    ):
        self.directory = Path(directory)
        self.max_bytes = max_bytes
        self.allowed_extensions = frozenset(ext.lower() for ext in allowed_extensions)

    async def read(self, upload: UploadFile) -> ValidatedUpload:
        """
        Read and validate an attachment without touching the upload directory.

        Raises:
            ValidationError: Wrong extension or empty (400), too large (413)
        """
        original_name = Path(upload.filename or "").name
        self.check_extension(original_name)

        content = await upload.read(self.max_bytes + 1)
        if len(content) > self.max_bytes:
            raise ValidationError(
                f"Image exceeds the {self.max_bytes // (1024 * 1024)} MB limit",
                field="image",
                http_status=413,
            )
        if not content:
            raise ValidationError("Image attachment is empty", field="image")

        return ValidatedUpload(original_name=original_name, content=content)

    async def write(self, upload: ValidatedUpload) -> Optional[StoredUpload]:
        """
        Persist a validated attachment under a unique name.

        Returns:
            StoredUpload, or None if the file could not be written (the
            failure is logged and the submission continues without image)
        """
        path = self.directory / self.unique_name(upload.original_name)
        try:
            await asyncio.to_thread(self._write, path, upload.content)
        except OSError as e:
            error = FileError(f"Failed to store upload: {e}", path=str(path))
            logger.error(error.message, path=error.path)
            return None

        return StoredUpload(path=path, original_name=upload.original_name, size=len(upload.content))

    def check_extension(self, filename: str) -> str:
        extension = Path(filename).suffix.lower()
        if extension not in self.allowed_extensions:
            raise ValidationError(
                f"Unsupported image type '{extension or filename}'; "
                f"allowed: {', '.join(sorted(self.allowed_extensions))}",
                field="image",
            )
        return extension

    @staticmethod
    def unique_name(filename: str) -> str:
        """Time-prefixed, randomized file name safe for the file system."""
        safe = re.sub(r"[^\w\-. ]", "_", filename).strip() or "image"
        return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}-{safe}"

    def _write(self, path: Path, content: bytes) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path.write_bytes(content)
