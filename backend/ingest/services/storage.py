import asyncio
import hashlib
import json
import logging
import os
import re
import tempfile
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from pathlib import Path
from typing import Final
from uuid import uuid4

import boto3
from botocore.client import Config
from botocore.exceptions import BotoCoreError, ClientError

from ingest.core.config import Settings
from ingest.core.exceptions import StorageError
from ingest.core.signing import now_ms

logger = logging.getLogger(__name__)

CHUNK_SIZE: Final[int] = 64 * 1024
_SPOOL_MAX_BYTES: Final[int] = 8 * 1024 * 1024
_MD5_RE = re.compile(r"^[0-9a-f]{32}$")

# Custom attribute names; S3 lowercases user metadata keys.
ATTR_ORIGINAL_NAME: Final[str] = "original-name"
ATTR_UPLOADED_BY: Final[str] = "uploaded-by"
ATTR_SLUG: Final[str] = "slug"
ATTR_CUSTOM_ID: Final[str] = "custom-id"
ATTR_UPLOAD_TIMESTAMP: Final[str] = "upload-timestamp"

ByteStream = AsyncIterator[bytes]


@dataclass
class ObjectInfo:
    key: str
    size: int
    content_type: str = "application/octet-stream"
    content_disposition: str | None = None
    custom_metadata: dict[str, str] = field(default_factory=dict)
    checksum: str | None = None
    etag: str | None = None
    uploaded_at: int | None = None


@dataclass
class StoredObject:
    info: ObjectInfo
    body: ByteStream


class StorageService:
    """Default S3-compatible storage backend."""

    scheme: Final[str] = "s3"

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        session = boto3.session.Session()
        self.client = session.client(
            "s3",
            endpoint_url=str(settings.s3_endpoint) if settings.s3_endpoint else None,
            aws_access_key_id=settings.s3_access_key,
            aws_secret_access_key=settings.s3_secret_key,
            region_name=settings.s3_region,
            config=Config(signature_version="s3v4"),
        )
        self.bucket = settings.s3_bucket_uploads

    @staticmethod
    def _info_from_response(key: str, response: dict) -> ObjectInfo:
        etag = (response.get("ETag") or "").strip('"') or None
        last_modified = response.get("LastModified")
        return ObjectInfo(
            key=key,
            size=int(response.get("ContentLength", 0)),
            content_type=response.get("ContentType") or "application/octet-stream",
            content_disposition=response.get("ContentDisposition"),
            custom_metadata=dict(response.get("Metadata") or {}),
            checksum=etag if etag and _MD5_RE.match(etag) else None,
            etag=etag,
            uploaded_at=int(last_modified.timestamp() * 1000) if last_modified else None,
        )

    @staticmethod
    def _object_key(key: str) -> str:
        # Keys are bucket-relative; no absolute paths or dot segments.
        parts = key.replace("\\", "/").split("/")
        if not key or key.startswith("/") or any(part in ("", ".", "..") for part in parts):
            raise StorageError("Invalid storage key")
        return key

    @staticmethod
    def _is_missing(exc: ClientError) -> bool:
        code = exc.response.get("Error", {}).get("Code")
        return code in ("404", "NoSuchKey", "NotFound")

    async def put(
        self,
        key: str,
        chunks: ByteStream,
        *,
        content_type: str,
        content_disposition: str | None = None,
        custom_metadata: dict[str, str] | None = None,
    ) -> ObjectInfo:
        object_key = self._object_key(key)
        metadata = dict(custom_metadata or {})
        with tempfile.SpooledTemporaryFile(max_size=_SPOOL_MAX_BYTES) as spool:
            size = 0
            async for chunk in chunks:
                size += len(chunk)
                await asyncio.to_thread(spool.write, chunk)
            spool.seek(0)

            def _upload() -> dict:
                params = {
                    "Bucket": self.bucket,
                    "Key": object_key,
                    "Body": spool,
                    "ContentType": content_type,
                    "Metadata": metadata,
                }
                if content_disposition:
                    params["ContentDisposition"] = content_disposition
                return self.client.put_object(**params)

            try:
                response = await asyncio.to_thread(_upload)
            except (BotoCoreError, ClientError) as exc:
                raise StorageError(f"Failed to store {key}") from exc

        info = self._info_from_response(key, response)
        info.size = size
        info.content_type = content_type
        info.content_disposition = content_disposition
        info.custom_metadata = metadata
        info.uploaded_at = now_ms()
        return info

    async def head(self, key: str) -> ObjectInfo | None:
        try:
            response = await asyncio.to_thread(
                self.client.head_object, Bucket=self.bucket, Key=self._object_key(key)
            )
        except ClientError as exc:
            if self._is_missing(exc):
                return None
            raise StorageError(f"Failed to inspect {key}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Failed to inspect {key}") from exc
        return self._info_from_response(key, response)

    async def get(
        self, key: str, *, offset: int | None = None, length: int | None = None
    ) -> StoredObject | None:
        params = {"Bucket": self.bucket, "Key": self._object_key(key)}
        if offset is not None:
            end = "" if length is None else str(offset + length - 1)
            params["Range"] = f"bytes={offset}-{end}"
        try:
            response = await asyncio.to_thread(lambda: self.client.get_object(**params))
        except ClientError as exc:
            if self._is_missing(exc):
                return None
            raise StorageError(f"Failed to read {key}") from exc
        except BotoCoreError as exc:
            raise StorageError(f"Failed to read {key}") from exc

        info = self._info_from_response(key, response)
        content_range = response.get("ContentRange")
        if content_range:
            # "bytes 2-5/10" carries the full object size after the slash.
            info.size = int(content_range.rsplit("/", 1)[-1])
        body = response["Body"]

        async def _stream() -> ByteStream:
            try:
                while chunk := await asyncio.to_thread(body.read, CHUNK_SIZE):
                    yield chunk
            finally:
                body.close()

        return StoredObject(info=info, body=_stream())

    async def delete(self, key: str) -> None:
        try:
            await asyncio.to_thread(
                self.client.delete_object, Bucket=self.bucket, Key=self._object_key(key)
            )
        except (BotoCoreError, ClientError) as exc:
            raise StorageError(f"Failed to delete {key}") from exc


class LocalStorageService(StorageService):
    """Local filesystem storage intended for development use."""

    scheme: Final[str] = "local"

    def __init__(self, settings: Settings) -> None:  # type: ignore[super-init-not-called]
        self.settings = settings
        self.base_path = Path(settings.local_storage_dir).resolve()
        self.base_path.mkdir(parents=True, exist_ok=True)
        self.meta_path = self.base_path / ".meta"
        self.meta_path.mkdir(parents=True, exist_ok=True)

    def _key_path(self, key: str) -> Path:
        # Prevent directory traversal by resolving inside base path
        candidate = self.base_path.joinpath(*Path(key).parts).resolve()
        if not candidate.is_relative_to(self.base_path) or candidate == self.base_path:
            raise StorageError("Invalid storage key")
        if candidate.is_relative_to(self.meta_path):
            raise StorageError("Invalid storage key")
        return candidate

    def _meta_file(self, key: str) -> Path:
        relative = self._key_path(key).relative_to(self.base_path)
        return self.meta_path.joinpath(*relative.parts).with_name(f"{relative.name}.json")

    def _read_info(self, key: str) -> ObjectInfo | None:
        path = self._key_path(key)
        if not path.is_file():
            return None
        meta_file = self._meta_file(key)
        meta = json.loads(meta_file.read_text(encoding="utf-8")) if meta_file.exists() else {}
        return ObjectInfo(
            key=key,
            size=path.stat().st_size,
            content_type=meta.get("content_type") or "application/octet-stream",
            content_disposition=meta.get("content_disposition"),
            custom_metadata=meta.get("custom_metadata") or {},
            checksum=meta.get("checksum"),
            etag=meta.get("checksum"),
            uploaded_at=meta.get("uploaded_at"),
        )

    async def put(  # type: ignore[override]
        self,
        key: str,
        chunks: ByteStream,
        *,
        content_type: str,
        content_disposition: str | None = None,
        custom_metadata: dict[str, str] | None = None,
    ) -> ObjectInfo:
        target = self._key_path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = target.with_name(f".{target.name}.tmp-{uuid4().hex}")
        digest = hashlib.md5(usedforsecurity=False)
        size = 0
        try:
            with tmp_path.open("wb") as handle:
                async for chunk in chunks:
                    digest.update(chunk)
                    size += len(chunk)
                    await asyncio.to_thread(handle.write, chunk)
            info = ObjectInfo(
                key=key,
                size=size,
                content_type=content_type,
                content_disposition=content_disposition,
                custom_metadata=dict(custom_metadata or {}),
                checksum=digest.hexdigest(),
                etag=digest.hexdigest(),
                uploaded_at=now_ms(),
            )
            meta_file = self._meta_file(key)
            meta_file.parent.mkdir(parents=True, exist_ok=True)
            meta_file.write_text(
                json.dumps(
                    {
                        "content_type": info.content_type,
                        "content_disposition": info.content_disposition,
                        "custom_metadata": info.custom_metadata,
                        "checksum": info.checksum,
                        "uploaded_at": info.uploaded_at,
                    }
                ),
                encoding="utf-8",
            )
            os.replace(tmp_path, target)
        except OSError as exc:
            raise StorageError(f"Failed to store {key}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)
        return info

    async def head(self, key: str) -> ObjectInfo | None:  # type: ignore[override]
        try:
            return await asyncio.to_thread(self._read_info, key)
        except (OSError, ValueError) as exc:
            raise StorageError(f"Failed to inspect {key}") from exc

    async def get(  # type: ignore[override]
        self, key: str, *, offset: int | None = None, length: int | None = None
    ) -> StoredObject | None:
        info = await self.head(key)
        if info is None:
            return None
        path = self._key_path(key)
        start = offset or 0

        async def _stream() -> ByteStream:
            remaining = info.size - start if length is None else length
            with path.open("rb") as handle:
                handle.seek(start)
                while remaining > 0:
                    chunk = await asyncio.to_thread(handle.read, min(CHUNK_SIZE, remaining))
                    if not chunk:
                        break
                    remaining -= len(chunk)
                    yield chunk

        return StoredObject(info=info, body=_stream())

    async def delete(self, key: str) -> None:  # type: ignore[override]
        path = self._key_path(key)
        try:
            path.unlink(missing_ok=True)
            self._meta_file(key).unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"Failed to delete {key}") from exc


async def compute_md5(storage: StorageService, key: str) -> str:
    """Hash a stored object by re-reading it; any failure yields ``""``."""
    try:
        stored = await storage.get(key)
        if stored is None:
            return ""
        digest = hashlib.md5(usedforsecurity=False)
        async for chunk in stored.body:
            digest.update(chunk)
        return digest.hexdigest()
    except Exception:
        logger.exception("Error calculating file hash for %s", key)
        return ""


def create_storage_service(settings: Settings) -> StorageService:
    if settings.storage_backend == "local":
        return LocalStorageService(settings)
    return StorageService(settings)
