import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass

from ingest.core.config import Settings
from ingest.core.exceptions import (
    IngestError,
    NotFoundError,
    RangeNotSatisfiableError,
    StorageError,
    ValidationError,
)
from ingest.core.signing import now_ms
from ingest.schemas import FileRecord, UploadPutResult
from ingest.services.callbacks import CallbackOrchestrator
from ingest.services.files import FileRegistry, file_urls
from ingest.services.storage import (
    ATTR_CUSTOM_ID,
    ATTR_ORIGINAL_NAME,
    ATTR_SLUG,
    ATTR_UPLOAD_TIMESTAMP,
    ATTR_UPLOADED_BY,
    ByteStream,
    StorageService,
    StoredObject,
    compute_md5,
)

logger = logging.getLogger(__name__)

_RESUME_RANGE_RE = re.compile(r"bytes=(\d+)-")
_DOWNLOAD_RANGE_RE = re.compile(r"bytes=(\d+)-(\d*)")

DEFAULT_CONTENT_TYPE = "application/octet-stream"


def parse_resume_offset(range_header: str | None) -> int:
    """Offset of a resumed upload; anything but ``bytes=<n>-`` means 0."""
    if not range_header:
        return 0
    match = _RESUME_RANGE_RE.search(range_header)
    return int(match.group(1)) if match else 0


def parse_download_range(range_header: str | None, size: int) -> tuple[int, int] | None:
    """Resolve ``bytes=<start>-<end>`` to an inclusive range within ``size``."""
    if not range_header:
        return None
    match = _DOWNLOAD_RANGE_RE.search(range_header)
    if not match:
        return None
    start = int(match.group(1))
    if start >= size:
        raise RangeNotSatisfiableError(size)
    end = int(match.group(2)) if match.group(2) else size - 1
    if end < start:
        return None
    return start, min(end, size - 1)


async def concat_streams(first: ByteStream, second: ByteStream) -> ByteStream:
    """Drain ``first`` completely, then ``second``."""
    async for chunk in first:
        yield chunk
    async for chunk in second:
        yield chunk


async def require_body(stream: ByteStream) -> ByteStream:
    """Return ``stream`` unchanged, or raise if it carries no bytes at all."""
    iterator = aiter(stream)
    async for first in iterator:
        if first:
            break
    else:
        raise ValidationError("No file data provided")

    async def _chained() -> ByteStream:
        yield first
        async for chunk in iterator:
            yield chunk

    return _chained()


@dataclass
class UploadParams:
    identifier: str | None = None
    file_name: str | None = None
    file_size: str | None = None
    file_type: str | None = None
    slug: str | None = None
    custom_id: str | None = None
    content_disposition: str = "inline"
    acl: str | None = None

    @classmethod
    def from_query(cls, query: Mapping[str, str]) -> "UploadParams":
        return cls(
            identifier=query.get("x-ut-identifier"),
            file_name=query.get("x-ut-file-name"),
            file_size=query.get("x-ut-file-size"),
            file_type=query.get("x-ut-file-type"),
            slug=query.get("x-ut-slug"),
            custom_id=query.get("x-ut-custom-id") or None,
            content_disposition=query.get("x-ut-content-disposition") or "inline",
            acl=query.get("x-ut-acl"),
        )


class UploadService:
    def __init__(
        self,
        settings: Settings,
        storage: StorageService,
        registry: FileRegistry,
        callbacks: CallbackOrchestrator,
    ) -> None:
        self.settings = settings
        self.storage = storage
        self.registry = registry
        self.callbacks = callbacks

    async def range_start(self, key: str) -> int:
        """Bytes already stored for ``key``; lookup failures report 0."""
        try:
            info = await self.storage.head(key)
        except StorageError:
            logger.exception("Failed to inspect %s for resumption", key)
            return 0
        return info.size if info else 0

    async def _resolve_stream(self, key: str, body: ByteStream, offset: int) -> ByteStream:
        if offset <= 0:
            return body
        existing = await self.storage.get(key)
        if existing is None:
            logger.info("Resume of %s at byte %d found no stored object; writing fresh", key, offset)
            return body
        logger.info(
            "Resuming %s: appending to %d stored bytes (requested offset %d)",
            key,
            existing.info.size,
            offset,
        )
        return concat_streams(existing.body, body)

    async def handle_put(
        self,
        key: str,
        params: UploadParams,
        body: ByteStream,
        *,
        content_type: str | None = None,
        range_header: str | None = None,
    ) -> UploadPutResult:
        offset = parse_resume_offset(range_header)
        resolved_type = content_type or params.file_type or DEFAULT_CONTENT_TYPE
        logger.info(
            "Upload request for %s",
            key,
            extra={"file_name": params.file_name, "offset": offset, "slug": params.slug},
        )

        try:
            stream = await self._resolve_stream(key, await require_body(body), offset)
            info = await self.storage.put(
                key,
                stream,
                content_type=resolved_type,
                content_disposition=params.content_disposition,
                custom_metadata={
                    ATTR_ORIGINAL_NAME: params.file_name or "unknown",
                    ATTR_UPLOADED_BY: params.identifier or "unknown",
                    ATTR_SLUG: params.slug or "unknown",
                    ATTR_CUSTOM_ID: params.custom_id or "",
                    ATTR_UPLOAD_TIMESTAMP: str(now_ms()),
                },
            )
        except IngestError:
            raise
        except Exception as exc:
            logger.exception("Upload of %s failed", key)
            raise StorageError("Upload failed") from exc

        file_hash = info.checksum or await compute_md5(self.storage, key)
        record = FileRecord(
            key=key,
            name=params.file_name or "unknown",
            size=info.size,
            type=resolved_type,
            custom_id=params.custom_id,
            uploaded_at=info.uploaded_at or now_ms(),
            file_hash=file_hash,
            acl=params.acl,
        )
        await self.registry.save_record(record)
        logger.info("Stored %s (%d bytes)", key, info.size)

        server_data = await self.callbacks.on_upload_complete(
            record, params.identifier, params.slug
        )
        url, app_url, ufs_url = file_urls(self.settings, key, params.identifier)
        return UploadPutResult(
            url=url,
            app_url=app_url,
            ufs_url=ufs_url,
            file_hash=file_hash,
            server_data=server_data,
        )

    async def open_download(
        self, key: str, range_header: str | None = None
    ) -> tuple[StoredObject, tuple[int, int] | None]:
        info = await self.storage.head(key)
        if info is None:
            raise NotFoundError("File not found")
        byte_range = parse_download_range(range_header, info.size)
        if byte_range is None:
            stored = await self.storage.get(key)
        else:
            start, end = byte_range
            stored = await self.storage.get(key, offset=start, length=end - start + 1)
        if stored is None:
            raise NotFoundError("File not found")
        return stored, byte_range
