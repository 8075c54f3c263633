import logging

from pydantic import ValidationError as SchemaError

from ingest.core.config import Settings
from ingest.core.signing import now_ms
from ingest.schemas import ErrorRecord, FileRecord, PendingMetadata
from ingest.services.metadata_store import MetadataStore

logger = logging.getLogger(__name__)

FILE_PREFIX = "file:"
METADATA_PREFIX = "metadata:"
ERROR_PREFIX = "error:"
CUSTOM_ID_PREFIX = "customid:"


def file_record_key(key: str) -> str:
    return f"{FILE_PREFIX}{key}"


def pending_metadata_key(key: str) -> str:
    return f"{METADATA_PREFIX}{key}"


def error_record_key(key: str) -> str:
    return f"{ERROR_PREFIX}{key}"


def custom_id_key(custom_id: str) -> str:
    return f"{CUSTOM_ID_PREFIX}{custom_id}"


def public_file_url(settings: Settings, key: str) -> str:
    return f"{settings.file_url_base}/f/{key}"


def file_urls(settings: Settings, key: str, identifier: str | None) -> tuple[str, str, str]:
    """Return ``(url, app_url, ufs_url)`` for a stored object.

    Without ``UFS_HOST`` the UFS url is the gateway's own file url.
    """
    url = public_file_url(settings, key)
    app_url = f"{settings.file_url_base}/a/{identifier or 'unknown'}/{key}"
    if not settings.ufs_host:
        return url, app_url, url
    ufs_url = f"https://{identifier or settings.app_id}.{settings.ufs_host.strip('./')}/f/{key}"
    return url, app_url, ufs_url


class FileRegistry:
    """Typed access to the records kept in the metadata store.

    ``file:<key>`` and its ``customid:<id>`` index entry are always written
    and removed together, so reverse lookups never scan the keyspace.
    """

    def __init__(self, store: MetadataStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings

    async def save_record(self, record: FileRecord) -> None:
        entries = {file_record_key(record.key): record.to_json()}
        if record.custom_id:
            entries[custom_id_key(record.custom_id)] = record.key
        await self.store.put_many(entries, self.settings.file_record_ttl_seconds)

    async def get_record(self, key: str) -> FileRecord | None:
        raw = await self.store.get(file_record_key(key))
        if raw is None:
            return None
        try:
            return FileRecord.model_validate_json(raw)
        except SchemaError:
            logger.warning("Discarding unreadable file record for %s", key)
            return None

    async def find_key_by_custom_id(self, custom_id: str) -> str | None:
        key = await self.store.get(custom_id_key(custom_id))
        if key is None:
            return None
        record = await self.get_record(key)
        # The index can outlive a record that was re-uploaded without the id.
        if record is None or record.custom_id != custom_id:
            return None
        return key

    async def resolve_key(self, file_key: str | None, custom_id: str | None) -> str | None:
        if file_key:
            return file_key
        if custom_id:
            return await self.find_key_by_custom_id(custom_id)
        return None

    async def delete_record(self, key: str) -> None:
        record = await self.get_record(key)
        keys = [file_record_key(key)]
        if record is not None and record.custom_id:
            keys.append(custom_id_key(record.custom_id))
        await self.store.delete(*keys)

    async def list_records(self, limit: int, offset: int = 0) -> tuple[list[FileRecord], bool]:
        keys = await self.store.list_keys(FILE_PREFIX, limit=offset + limit + 1)
        page = keys[offset : offset + limit]
        records = []
        for store_key in page:
            record = await self.get_record(store_key.removeprefix(FILE_PREFIX))
            if record is not None:
                records.append(record)
        return records, len(keys) > offset + limit

    async def usage(self) -> tuple[int, int]:
        """Return ``(total_bytes, file_count)`` over every live record."""
        total_bytes = 0
        files = 0
        for store_key in await self.store.list_keys(FILE_PREFIX):
            record = await self.get_record(store_key.removeprefix(FILE_PREFIX))
            if record is not None:
                total_bytes += record.size
                files += 1
        return total_bytes, files

    async def rename(self, key: str, new_name: str) -> bool:
        record = await self.get_record(key)
        if record is None:
            return False
        record.name = new_name
        await self.save_record(record)
        return True

    async def update_acl(self, key: str, acl: str) -> bool:
        record = await self.get_record(key)
        if record is None:
            return False
        record.acl = acl
        await self.save_record(record)
        return True

    async def mark_completed(self, key: str) -> bool:
        record = await self.get_record(key)
        if record is None:
            return False
        record.uploaded_at = now_ms()
        await self.save_record(record)
        return True

    async def register_pending(self, file_keys: list[str], pending: PendingMetadata) -> None:
        value = pending.to_json()
        await self.store.put_many(
            {pending_metadata_key(key): value for key in file_keys},
            self.settings.pending_metadata_ttl_seconds,
        )

    async def get_pending(self, key: str) -> PendingMetadata | None:
        raw = await self.store.get(pending_metadata_key(key))
        if raw is None:
            return None
        try:
            return PendingMetadata.model_validate_json(raw)
        except SchemaError:
            logger.warning("Discarding unreadable pending metadata for %s", key)
            return None

    async def record_error(self, key: str, error: object, upload_id: str | None = None) -> None:
        record = ErrorRecord(error=error, upload_id=upload_id, timestamp=now_ms())
        await self.store.put(
            error_record_key(key), record.to_json(), self.settings.error_record_ttl_seconds
        )

    async def get_error(self, key: str) -> ErrorRecord | None:
        raw = await self.store.get(error_record_key(key))
        return ErrorRecord.model_validate_json(raw) if raw is not None else None
