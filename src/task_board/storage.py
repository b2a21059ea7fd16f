"""
Blob storage for comment attachments.

Uploads are addressed by a relative path and return a public retrieval URL.
Size is checked client-side against a configurable ceiling before upload.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from .config import DEFAULT_ATTACHMENT_MAX_MB
from .errors import BackendError, ValidationError

logger = logging.getLogger(__name__)

ATTACHMENT_BUCKET = "task-attachments"


@dataclass(frozen=True)
class AttachmentFile:
    """A file picked for upload: display name plus content."""

    name: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def extension(self) -> str:
        return self.name.rsplit(".", 1)[-1] if "." in self.name else "bin"


def format_file_size(size_bytes: int) -> str:
    if size_bytes < 1024:
        return f"{size_bytes} B"
    if size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    return f"{size_bytes / (1024 * 1024):.1f} MB"


def check_attachment_size(size_bytes: int, max_mb: float = DEFAULT_ATTACHMENT_MAX_MB) -> None:
    """
    Enforce the attachment size ceiling.

    Raises:
        ValidationError: If the file exceeds ``max_mb`` megabytes
    """
    if size_bytes > max_mb * 1024 * 1024:
        raise ValidationError(f"File must not exceed {max_mb:g}MB", rule="attachment")


def attachment_path(owner_id: str, attachment: AttachmentFile) -> str:
    """Storage path ``<owner>/<random>.<ext>`` for an attachment."""
    return f"{owner_id}/{uuid.uuid4().hex}.{attachment.extension}"


class BlobStorage(ABC):
    """Upload-by-path storage returning public URLs."""

    @abstractmethod
    async def upload(self, path: str, data: bytes) -> str:
        """
        Store ``data`` at ``path``.

        Returns:
            Public retrieval URL

        Raises:
            BackendError: If the upload fails
        """

    @abstractmethod
    def public_url(self, path: str) -> str:
        pass


class LocalBlobStorage(BlobStorage):
    """
    Filesystem-backed storage served by the HTTP service under ``/storage``.

    Args:
        root: Directory holding the bucket directories
        public_base_url: Base URL of the service serving the files
        bucket: Bucket name (sub-directory of root)
    """

    def __init__(self, root: str, public_base_url: str, bucket: str = ATTACHMENT_BUCKET):
        self.bucket = bucket
        self.root = (Path(root) / bucket).resolve()
        self.public_base_url = public_base_url.rstrip("/")
        self.root.mkdir(parents=True, exist_ok=True)

    def resolve(self, path: str) -> Path:
        """
        Map a storage path to a file under the bucket root.

        Raises:
            ValidationError: If the path is empty or escapes the bucket
        """
        if not path or path.startswith("/"):
            raise ValidationError(f"Invalid storage path '{path}'", rule="path")
        target = (self.root / path).resolve()
        if self.root not in target.parents:
            raise ValidationError(f"Invalid storage path '{path}'", rule="path")
        return target

    def public_url(self, path: str) -> str:
        return f"{self.public_base_url}/storage/{self.bucket}/{path}"

    async def upload(self, path: str, data: bytes) -> str:
        target = self.resolve(path)
        if target.exists():
            raise BackendError(f"Object already exists at '{path}'")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            logger.error(f"Failed to store blob {path}: {e}")
            raise BackendError(f"Upload failed for '{path}'") from e
        logger.info(f"Stored blob {path} ({format_file_size(len(data))})")
        return self.public_url(path)
