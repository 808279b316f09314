from __future__ import annotations
import io
from dataclasses import dataclass
from typing import Protocol
from fastapi.concurrency import run_in_threadpool
from minio import Minio
from minio.error import S3Error
import structlog
from app.config import settings

log = structlog.get_logger()


@dataclass(frozen=True)
class UploadResult:
    url: str
    key: str


class MediaUploader(Protocol):
    async def upload(self, key: str, data: bytes, content_type: str) -> UploadResult: ...


def _parse_endpoint(ep: str) -> tuple[str, bool]:
    # Return (host:port, secure)
    secure = ep.startswith("https://")
    host = ep.replace("http://", "").replace("https://", "")
    return host, secure


class MinioUploader:
    """Screenshot storage on S3/MinIO. The client is created on first use."""

    def __init__(self, endpoint: str, access_key: str, secret_key: str, bucket: str, public_base_url: str):
        self._endpoint = endpoint
        self._access_key = access_key
        self._secret_key = secret_key
        self._bucket = bucket
        self._public_base_url = public_base_url.rstrip("/")
        self._client: Minio | None = None

    def _conn(self) -> Minio:
        if self._client is None:
            host, secure = _parse_endpoint(self._endpoint)
            self._client = Minio(host, access_key=self._access_key, secret_key=self._secret_key, secure=secure)
            # Ensure bucket exists (idempotent)
            try:
                if not self._client.bucket_exists(self._bucket):
                    self._client.make_bucket(self._bucket)
            except S3Error as e:
                # bucket creation may race with another worker; it's fine if it already exists
                log.info("bucket_check_failed", bucket=self._bucket, code=e.code)
        return self._client

    def put_bytes(self, key: str, data: bytes, content_type: str) -> None:
        self._conn().put_object(self._bucket, key, io.BytesIO(data), length=len(data), content_type=content_type)

    def get_bytes(self, key: str) -> tuple[bytes, str]:
        """Returns (data, content_type)."""
        try:
            response = self._conn().get_object(self._bucket, key)
            data = response.read()
            content_type = response.headers.get("Content-Type", "application/octet-stream")
            return data, content_type
        except S3Error as e:
            if e.code == "NoSuchKey":
                raise FileNotFoundError(f"Object not found: {key}")
            raise

    async def upload(self, key: str, data: bytes, content_type: str) -> UploadResult:
        await run_in_threadpool(self.put_bytes, key, data, content_type)
        return UploadResult(url=f"{self._public_base_url}/{key}", key=key)


_uploader: MinioUploader | None = None

def get_uploader() -> MediaUploader:
    global _uploader
    if _uploader is None:
        _uploader = MinioUploader(
            settings.s3_endpoint,
            settings.s3_access_key,
            settings.s3_secret_key,
            settings.s3_bucket_uploads,
            settings.media_public_base_url,
        )
    return _uploader
