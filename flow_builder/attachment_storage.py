# flow_builder/attachment_storage.py
"""
Where answer attachments live. The rest of the code only ever sees an opaque
Attachment(url, name); this module is the only place that knows what the url means.
"""

import logging
import mimetypes
import os
import random
import time
from pathlib import Path
from urllib.parse import urlparse

from dotenv import load_dotenv

from flow_builder.errors import DeleteAttachmentError, UploadError
from flow_builder.translations import Attachment

load_dotenv()

logger = logging.getLogger("flow_builder")

UPLOAD_BACKEND = os.getenv("UPLOAD_BACKEND", "local")
UPLOAD_DIR = os.getenv("UPLOAD_DIR", os.path.join("public", "uploads"))
UPLOAD_URL_PREFIX = os.getenv("UPLOAD_URL_PREFIX", "/uploads")
GCS_BUCKET_NAME = os.getenv("GCS_BUCKET_NAME", "")
GCS_UPLOAD_PREFIX = os.getenv("GCS_UPLOAD_PREFIX", "uploads")


def unique_filename(filename: str) -> str:
    """`report.pdf` -> `report-1700000000000-123456789.pdf`"""
    filename = os.path.basename(filename or "") or "file"
    suffix = f"{int(time.time() * 1000)}-{random.randint(0, 10**9)}"
    base, dot, ext = filename.rpartition(".")
    if not dot or not base:
        return f"{filename}-{suffix}"
    return f"{base}-{suffix}.{ext}"


class LocalAttachmentStorage:
    def __init__(self, upload_dir: str = UPLOAD_DIR, url_prefix: str = UPLOAD_URL_PREFIX):
        self.upload_dir = Path(upload_dir)
        self.url_prefix = url_prefix.rstrip("/")

    def upload(self, filename: str, data: bytes) -> Attachment:
        if data is None:
            raise UploadError("No body")
        safe_name = unique_filename(filename)
        try:
            self.upload_dir.mkdir(parents=True, exist_ok=True)
            (self.upload_dir / safe_name).write_bytes(data)
        except OSError as e:
            logger.error("Upload of %s failed: %s", filename, e)
            raise UploadError(f"Upload failed: {e}") from e
        logger.info("Uploaded %s as %s", filename, safe_name)
        return Attachment(url=f"{self.url_prefix}/{safe_name}", name=os.path.basename(filename or "") or safe_name)

    def delete(self, url: str) -> None:
        if not url:
            raise DeleteAttachmentError("Url required")
        name = os.path.basename(urlparse(url).path)
        if not name:
            raise DeleteAttachmentError(f"Invalid URL: {url}")
        path = self.upload_dir / name
        try:
            if path.exists():
                path.unlink()
        except OSError as e:
            logger.error("Delete of %s failed: %s", url, e)
            raise DeleteAttachmentError(f"Delete failed: {e}") from e


class GCSAttachmentStorage:
    """Public objects in a bucket; urls are https://storage.googleapis.com/<bucket>/<path>."""

    def __init__(self, storage_client, bucket_name: str = GCS_BUCKET_NAME, prefix: str = GCS_UPLOAD_PREFIX):
        if not bucket_name:
            raise RuntimeError("GCS_BUCKET_NAME is required for the gcs upload backend")
        self.storage_client = storage_client
        self.bucket_name = bucket_name
        self.prefix = prefix.strip("/")

    def _blob_path(self, url: str) -> str:
        parsed = urlparse(url)
        path = parsed.path.lstrip("/")
        if parsed.scheme == "gs":
            return path
        head = f"{self.bucket_name}/"
        if path.startswith(head):
            return path[len(head):]
        raise DeleteAttachmentError(f"Invalid URL: {url}")

    def upload(self, filename: str, data: bytes) -> Attachment:
        if data is None:
            raise UploadError("No body")
        blob_path = f"{self.prefix}/{unique_filename(filename)}" if self.prefix else unique_filename(filename)
        content_type = mimetypes.guess_type(filename or "")[0] or "application/octet-stream"
        try:
            bucket = self.storage_client.bucket(self.bucket_name)
            blob = bucket.blob(blob_path)
            blob.upload_from_string(data, content_type=content_type)
        except Exception as e:
            logger.error("GCS upload of %s failed: %s", filename, e)
            raise UploadError(f"Upload failed: {e}") from e
        return Attachment(
            url=f"https://storage.googleapis.com/{self.bucket_name}/{blob_path}",
            name=os.path.basename(filename or "") or blob_path.rsplit("/", 1)[-1],
        )

    def delete(self, url: str) -> None:
        if not url:
            raise DeleteAttachmentError("Url required")
        blob_path = self._blob_path(url)
        try:
            blob = self.storage_client.bucket(self.bucket_name).blob(blob_path)
            if blob.exists():
                blob.delete()
        except Exception as e:
            logger.error("GCS delete of %s failed: %s", url, e)
            raise DeleteAttachmentError(f"Delete failed: {e}") from e


def build_attachment_storage(connection=None):
    if UPLOAD_BACKEND == "gcs":
        if connection is None:
            from flow_builder.DBConnection_hlpr import DBConnection
            connection = DBConnection()
        return GCSAttachmentStorage(connection.storage_client)
    return LocalAttachmentStorage()
