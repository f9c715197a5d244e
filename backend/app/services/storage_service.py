import os
import uuid
import aiofiles
from pathlib import Path
from typing import Optional

import structlog

from app.core.config import settings
from app.core.exceptions import ValidationFailed
from app.schemas.support import FileRef

logger = structlog.get_logger()


class StorageService:
    """
    Attachment storage for support messages (local disk).
    store() returns an opaque FileRef; public_url() turns its key into a URL.
    """

    ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp"}
    ALLOWED_MIME_TYPES = {"image/jpeg", "image/png", "image/webp"}
    FOLDER = "support-messages"

    def __init__(
        self,
        upload_dir: Optional[str] = None,
        base_url: Optional[str] = None,
        max_bytes: Optional[int] = None,
    ):
        self.upload_dir = upload_dir or settings.UPLOAD_DIR
        self.base_url = (base_url or settings.PUBLIC_FILES_BASE_URL).rstrip("/")
        self.max_bytes = max_bytes or settings.UPLOAD_MAX_BYTES

    def validate(self, filename: str, content_type: Optional[str], size: int) -> str:
        """Returns the normalized extension."""
        ext = os.path.splitext(filename or "")[1].lower()
        if ext not in self.ALLOWED_EXTENSIONS:
            raise ValidationFailed("Only jpg, jpeg, png and webp images are accepted")
        if content_type and content_type not in self.ALLOWED_MIME_TYPES:
            raise ValidationFailed(f"Unsupported content type: {content_type}")
        if size <= 0:
            raise ValidationFailed("File is empty")
        if size > self.max_bytes:
            raise ValidationFailed(f"File exceeds {self.max_bytes // (1024 * 1024)} MB")
        return ext

    async def store(self, content: bytes, filename: str, content_type: Optional[str]) -> FileRef:
        ext = self.validate(filename, content_type, len(content))
        key = f"{self.FOLDER}/{uuid.uuid4()}{ext}"

        # Ensure directory exists
        target = Path(self.upload_dir) / key
        target.parent.mkdir(parents=True, exist_ok=True)

        async with aiofiles.open(target, 'wb') as f:
            await f.write(content)

        logger.info("attachment_stored", key=key, size=len(content))
        return FileRef(
            key=key,
            url=self.public_url(key),
            name=os.path.basename(filename),
            size=len(content),
            content_type=content_type or "application/octet-stream",
        )

    def public_url(self, key: str) -> str:
        return f"{self.base_url}/{key}"

    def local_path(self, key: str) -> Optional[Path]:
        """Path of a stored attachment, or None if the key is unknown or escapes the folder."""
        root = (Path(self.upload_dir) / self.FOLDER).resolve()
        target = (Path(self.upload_dir) / key).resolve()
        if target.parent != root or not target.is_file():
            return None
        return target
