import os
import re
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import List, Optional
from uuid import uuid4

from fellowship.config import DATA_DIR, read_int_env
from fellowship.models import StoredFile

COMMUNITY_BUCKET = "community-files"
CHAT_BUCKET = "chat-attachments"
BUCKETS = {COMMUNITY_BUCKET, CHAT_BUCKET}

MAX_UPLOAD_BYTES = read_int_env("MAX_UPLOAD_BYTES", 10 * 1024 * 1024, min_value=1)
CHAT_CONTENT_TYPES = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "application/pdf": "pdf",
    "text/plain": "txt",
    "application/msword": "doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "docx",
}

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class FileStoreError(ValueError):
    """Base class for user-visible storage errors."""


class FileStoreValidationError(FileStoreError):
    pass


class FileStoreNotFoundError(FileStoreError):
    pass


def sanitize_filename(name: str) -> str:
    base = Path(name or "file").name
    cleaned = _UNSAFE_NAME_CHARS.sub("_", base).strip("._")
    return cleaned[:100] or "file"


@dataclass
class FileStore:
    root_dir: str
    public_base_url: str = ""

    def __post_init__(self) -> None:
        self._lock = Lock()
        self.root = Path(self.root_dir).resolve()
        for bucket in BUCKETS:
            (self.root / bucket).mkdir(parents=True, exist_ok=True)

    def _resolve(self, bucket: str, path: str) -> Path:
        if bucket not in BUCKETS:
            raise FileStoreNotFoundError("Unknown bucket")
        bucket_root = (self.root / bucket).resolve()
        target = (bucket_root / path).resolve()
        if target != bucket_root and bucket_root not in target.parents:
            raise FileStoreValidationError("Invalid file path")
        return target

    def public_url(self, bucket: str, path: str) -> str:
        return f"{self.public_base_url.rstrip('/')}/files/{bucket}/{path}"

    def upload(
        self,
        bucket: str,
        data: bytes,
        filename: str,
        content_type: str,
        folder: str = "",
    ) -> StoredFile:
        if len(data) > MAX_UPLOAD_BYTES:
            raise FileStoreValidationError(f"File is larger than {MAX_UPLOAD_BYTES // (1024 * 1024)}MB")
        if not data:
            raise FileStoreValidationError("File is empty")
        timestamp = int(datetime.now(timezone.utc).timestamp() * 1000)
        stored_name = f"{timestamp}-{secrets.token_hex(4)}-{sanitize_filename(filename)}"
        return self._write(bucket, data, stored_name, filename, content_type, folder)

    def upload_chat_attachment(self, data: bytes, filename: str, content_type: str) -> StoredFile:
        extension = CHAT_CONTENT_TYPES.get(content_type)
        if not extension:
            raise FileStoreValidationError("Unsupported file type")
        if len(data) > MAX_UPLOAD_BYTES:
            raise FileStoreValidationError(f"File is larger than {MAX_UPLOAD_BYTES // (1024 * 1024)}MB")
        if not data:
            raise FileStoreValidationError("File is empty")
        timestamp = int(datetime.now(timezone.utc).timestamp() * 1000)
        stored_name = f"chat_{timestamp}_{secrets.token_hex(4)}.{extension}"
        return self._write(CHAT_BUCKET, data, stored_name, filename, content_type, "")

    def _write(
        self,
        bucket: str,
        data: bytes,
        stored_name: str,
        original_name: str,
        content_type: str,
        folder: str,
    ) -> StoredFile:
        folder = "/".join(sanitize_filename(part) for part in folder.split("/") if part.strip())
        relative = f"{folder}/{stored_name}" if folder else stored_name
        target = self._resolve(bucket, relative)
        with self._lock:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        return StoredFile(
            id=f"f_{uuid4().hex[:12]}",
            name=original_name or stored_name,
            url=self.public_url(bucket, relative),
            size=len(data),
            content_type=content_type or "application/octet-stream",
            bucket=bucket,
            path=relative,
        )

    def open_path(self, bucket: str, path: str) -> Path:
        target = self._resolve(bucket, path)
        if not target.is_file():
            raise FileStoreNotFoundError("File not found")
        return target

    def uploader_of(self, bucket: str, path: str) -> Optional[str]:
        """Uploader id of a community file, read from the resolved `<folder>/<user id>/<name>` layout."""
        if bucket != COMMUNITY_BUCKET:
            return None
        relative = self._resolve(bucket, path).relative_to((self.root / bucket).resolve())
        parts = relative.parts
        return parts[1] if len(parts) == 3 else None

    def delete(self, bucket: str, path: str) -> None:
        target = self._resolve(bucket, path)
        with self._lock:
            if not target.is_file():
                raise FileStoreNotFoundError("File not found")
            target.unlink()

    def delete_many(self, bucket: str, paths: List[str]) -> int:
        deleted = 0
        for path in paths:
            try:
                self.delete(bucket, path)
            except FileStoreNotFoundError:
                continue
            deleted += 1
        return deleted

    def list_folder(self, bucket: str, folder: Optional[str] = None) -> List[str]:
        base = self._resolve(bucket, folder) if folder else self._resolve(bucket, ".")
        if not base.is_dir():
            return []
        bucket_root = (self.root / bucket).resolve()
        return sorted(str(p.relative_to(bucket_root)) for p in base.iterdir() if p.is_file())


file_store = FileStore(
    root_dir=os.getenv("UPLOAD_DIR", str(DATA_DIR / "uploads")),
    public_base_url=os.getenv("PUBLIC_BASE_URL", ""),
)
