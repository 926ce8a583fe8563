"""
Content store for retrieved clinical documents (supports local and S3)

Artifacts are content-addressed by tenant and document primary id, so the
existence of a key means the document was already fetched. Writes take an
async byte stream and never stage content on local disk (S3 uploads use
multipart parts buffered in memory).
"""

import asyncio
import os
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterable, Optional, Protocol
from urllib.parse import quote

import boto3
from botocore.exceptions import ClientError
from hie_sync.core.config import Settings, settings
from hie_sync.core.logging import get_logger

logger = get_logger(__name__)

# S3 requires every part but the last to be at least 5 MiB
S3_PART_SIZE = 5 * 1024 * 1024


def make_content_key(tenant_id: str, primary_id: str) -> str:
    """Deterministic storage key for a tenant's document."""
    return f"{tenant_id}/{quote(primary_id, safe='')}"


@dataclass
class StoredObject:
    """Where an artifact ended up"""

    location: str
    key: str
    size: int = 0


class ContentStore(Protocol):
    async def exists(self, key: str) -> bool: ...

    async def put(
        self, key: str, chunks: AsyncIterable[bytes], content_type: Optional[str] = None
    ) -> StoredObject: ...

    def location_for(self, key: str) -> str: ...


class LocalContentStore:
    """Filesystem-backed store, for development and single-node deployments"""

    def __init__(self, root_dir: str):
        self.root = Path(root_dir)
        self.root.mkdir(parents=True, exist_ok=True)
        logger.info("content_store_local", root=str(self.root))

    def _path(self, key: str) -> Path:
        return self.root / key

    def location_for(self, key: str) -> str:
        return self._path(key).resolve().as_uri()

    async def exists(self, key: str) -> bool:
        return await asyncio.to_thread(self._path(key).is_file)

    async def put(self, key: str, chunks: AsyncIterable[bytes], content_type: Optional[str] = None) -> StoredObject:
        path = self._path(key)
        partial = path.with_name(f"{path.name}.part")
        await asyncio.to_thread(path.parent.mkdir, parents=True, exist_ok=True)
        size = 0
        f = await asyncio.to_thread(open, partial, "wb")
        try:
            try:
                async for chunk in chunks:
                    await asyncio.to_thread(f.write, chunk)
                    size += len(chunk)
            finally:
                await asyncio.to_thread(f.close)
            await asyncio.to_thread(os.replace, partial, path)
        except BaseException:
            await asyncio.to_thread(partial.unlink, missing_ok=True)
            raise
        return StoredObject(location=self.location_for(key), key=key, size=size)


class S3ContentStore:
    """S3-backed store"""

    def __init__(self, bucket: str, region: str, s3_client=None):
        self.bucket = bucket
        self.region = region
        self.s3_client = s3_client or boto3.client("s3", region_name=region)
        logger.info("content_store_s3", bucket=bucket)

    def location_for(self, key: str) -> str:
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"

    async def exists(self, key: str) -> bool:
        try:
            await asyncio.to_thread(self.s3_client.head_object, Bucket=self.bucket, Key=key)
            return True
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("404", "NoSuchKey", "NotFound"):
                return False
            raise

    async def put(self, key: str, chunks: AsyncIterable[bytes], content_type: Optional[str] = None) -> StoredObject:
        extra = {"ContentType": content_type} if content_type else {}
        created = await asyncio.to_thread(
            self.s3_client.create_multipart_upload, Bucket=self.bucket, Key=key, **extra
        )
        upload_id = created["UploadId"]
        parts = []
        buffer = bytearray()
        size = 0

        async def upload_part(body: bytes) -> None:
            number = len(parts) + 1
            resp = await asyncio.to_thread(
                self.s3_client.upload_part,
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                PartNumber=number,
                Body=body,
            )
            parts.append({"ETag": resp["ETag"], "PartNumber": number})

        try:
            async for chunk in chunks:
                buffer.extend(chunk)
                size += len(chunk)
                if len(buffer) >= S3_PART_SIZE:
                    await upload_part(bytes(buffer))
                    buffer = bytearray()
            if buffer or not parts:
                await upload_part(bytes(buffer))
            await asyncio.to_thread(
                self.s3_client.complete_multipart_upload,
                Bucket=self.bucket,
                Key=key,
                UploadId=upload_id,
                MultipartUpload={"Parts": parts},
            )
        except BaseException:
            logger.warning("s3_upload_aborted", key=key, parts=len(parts))
            await asyncio.to_thread(
                self.s3_client.abort_multipart_upload, Bucket=self.bucket, Key=key, UploadId=upload_id
            )
            raise

        return StoredObject(location=self.location_for(key), key=key, size=size)


def build_content_store(app_settings: Optional[Settings] = None) -> ContentStore:
    """Content store selected by DOCUMENT_STORE_TYPE."""
    app_settings = app_settings or settings
    if app_settings.DOCUMENT_STORE_TYPE == "local":
        return LocalContentStore(app_settings.DOCUMENT_STORE_DIR)
    if app_settings.DOCUMENT_STORE_TYPE == "s3":
        if not app_settings.MEDICAL_DOCUMENTS_BUCKET:
            raise ValueError("MEDICAL_DOCUMENTS_BUCKET is required for the s3 content store")
        return S3ContentStore(app_settings.MEDICAL_DOCUMENTS_BUCKET, app_settings.AWS_REGION)
    raise ValueError(f"Unknown storage type: {app_settings.DOCUMENT_STORE_TYPE}")
