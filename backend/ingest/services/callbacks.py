"""Correlates upload completion with route metadata and notifies the origin.

Production mode posts one signed webhook per completed upload. Development
mode instead streams signed completion events, one JSON object per line, back
to the caller that registered the upload.
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx

from ingest.core.config import Settings
from ingest.core.exceptions import CallbackDeliveryError, StorageError
from ingest.core.signing import now_ms, sign_payload
from ingest.schemas import (
    CallbackFile,
    CallbackPayload,
    FileRecord,
    PendingMetadata,
    RouteMetadataRequest,
    StreamPart,
)
from ingest.services.files import FileRegistry, file_urls
from ingest.services.storage import (
    ATTR_CUSTOM_ID,
    ATTR_ORIGINAL_NAME,
    ATTR_UPLOADED_BY,
    ObjectInfo,
    StorageService,
    compute_md5,
)
from ingest.tasks.runner import BackgroundTaskRunner

logger = logging.getLogger(__name__)

HOOK_HEADER = "uploadthing-hook"
SIGNATURE_HEADER = "x-uploadthing-signature"
DEFAULT_SLUG = "default"
# Extra time the runner allows a dev monitor past its own polling deadline.
_MONITOR_GRACE_SECONDS = 5.0


@dataclass(frozen=True)
class CallbackTarget:
    url: str
    slug: str

    def resolved_url(self) -> httpx.URL:
        return httpx.URL(self.url).copy_merge_params({"slug": self.slug})


class CallbackOrchestrator:
    def __init__(
        self,
        settings: Settings,
        storage: StorageService,
        registry: FileRegistry,
        http_client: httpx.AsyncClient,
        runner: BackgroundTaskRunner,
        monitor_runner: BackgroundTaskRunner | None = None,
    ) -> None:
        self.settings = settings
        self.storage = storage
        self.registry = registry
        self.http_client = http_client
        self.runner = runner
        # Long-lived dev monitors; kept apart from webhook delivery slots.
        self.monitor_runner = monitor_runner or runner

    async def register(self, request: RouteMetadataRequest) -> None:
        pending = PendingMetadata(
            middleware_metadata=request.metadata,
            callback_url=request.callback_url,
            callback_slug=request.callback_slug,
            await_server_data=request.await_server_data,
            is_dev=request.is_dev,
            registered_at=now_ms(),
        )
        await self.registry.register_pending(request.file_keys, pending)
        logger.info(
            "Registered metadata for %d file(s)",
            len(request.file_keys),
            extra={"file_keys": request.file_keys, "is_dev": request.is_dev},
        )

    async def record_failure(self, key: str, error: Any, upload_id: str | None = None) -> None:
        logger.warning("Upload failure reported for %s: %s", key, error)
        await self.registry.record_error(key, error, upload_id)

    async def _load_pending(self, key: str) -> PendingMetadata | None:
        try:
            return await self.registry.get_pending(key)
        except StorageError:
            logger.exception("Failed to retrieve stored metadata for %s", key)
            return None

    def _resolve_target(
        self, pending: PendingMetadata | None, slug: str | None
    ) -> CallbackTarget | None:
        if pending is not None and pending.callback_url:
            if pending.is_dev:
                return None
            return CallbackTarget(pending.callback_url, pending.callback_slug or DEFAULT_SLUG)
        if self.settings.client_base_url and slug:
            return CallbackTarget(
                f"{self.settings.client_base_url.rstrip('/')}/api/uploadthing", slug
            )
        return None

    def build_payload(
        self,
        *,
        record: FileRecord,
        identifier: str | None,
        metadata: dict[str, Any],
    ) -> CallbackPayload:
        url, app_url, ufs_url = file_urls(self.settings, record.key, identifier)
        return CallbackPayload(
            file=CallbackFile(
                key=record.key,
                name=record.name,
                size=record.size,
                type=record.type,
                last_modified=record.uploaded_at or now_ms(),
                custom_id=record.custom_id,
                url=url,
                app_url=app_url,
                ufs_url=ufs_url,
                file_hash=record.file_hash or "",
            ),
            origin=self.settings.api_base_url,
            metadata=metadata,
        )

    async def on_upload_complete(
        self, record: FileRecord, identifier: str | None, slug: str | None
    ) -> Any:
        """Schedule the webhook for a finished upload.

        Returns the origin's response body when the registration asked to
        await server data, otherwise ``None`` without waiting.
        """
        pending = await self._load_pending(record.key)
        target = self._resolve_target(pending, slug)
        if target is None:
            return None

        payload = self.build_payload(
            record=record,
            identifier=identifier,
            metadata=pending.middleware_metadata if pending else {},
        )
        try:
            task = self.runner.submit(
                lambda: self._deliver_logged(target, payload),
                timeout=self.settings.callback_timeout_seconds,
                name=f"callback {record.key}",
            )
        except RuntimeError:
            logger.warning("Task runner not ready; callback for %s skipped", record.key)
            return None

        if pending is not None and pending.await_server_data:
            return await asyncio.shield(task)
        return None

    async def deliver(self, target: CallbackTarget, payload: CallbackPayload) -> Any:
        body = payload.to_json()
        url = target.resolved_url()
        headers = {
            "Content-Type": "application/json",
            HOOK_HEADER: "callback",
            SIGNATURE_HEADER: sign_payload(body, self.settings.webhook_signing_key),
        }
        logger.info("Sending callback for %s to %s", payload.file.key, url)
        try:
            response = await self.http_client.post(
                url,
                content=body.encode("utf-8"),
                headers=headers,
                timeout=self.settings.callback_timeout_seconds,
            )
        except httpx.HTTPError as exc:
            raise CallbackDeliveryError(f"Callback to {url} failed: {exc}") from exc

        if not response.is_success:
            raise CallbackDeliveryError(
                f"Callback to {url} failed with {response.status_code}: {response.text[:500]}"
            )
        logger.info("Callback for %s delivered", payload.file.key)
        try:
            return response.json()
        except ValueError:
            return None

    async def _deliver_logged(self, target: CallbackTarget, payload: CallbackPayload) -> Any:
        try:
            return await self.deliver(target, payload)
        except CallbackDeliveryError as exc:
            logger.error("%s", exc.message)
            return None

    def stream_dev_events(self, request: RouteMetadataRequest) -> AsyncIterator[bytes]:
        """Start a monitor for ``request.file_keys`` and return its event stream.

        The stream ends when every key has been seen, when the polling deadline
        passes, or after a single ``error`` line if the monitor fails.
        """
        queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        file_keys = list(dict.fromkeys(request.file_keys))
        task = self.monitor_runner.submit(
            lambda: self._monitor_uploads(file_keys, queue),
            timeout=self.settings.dev_poll_timeout_seconds + _MONITOR_GRACE_SECONDS,
            name=f"dev monitor {','.join(file_keys)}",
        )

        async def _drain() -> AsyncIterator[bytes]:
            try:
                while (line := await queue.get()) is not None:
                    yield line
            finally:
                if not task.done():
                    task.cancel()

        return _drain()

    def _encode_part(self, payload: dict[str, Any] | str, hook: str) -> bytes:
        body = payload if isinstance(payload, str) else json.dumps(payload)
        part = StreamPart(
            payload=body,
            signature=sign_payload(body, self.settings.webhook_signing_key),
            hook=hook,
        )
        return f"{part.to_json()}\n".encode("utf-8")

    async def _dev_callback_line(self, info: ObjectInfo) -> bytes:
        pending = await self._load_pending(info.key)
        attrs = info.custom_metadata
        record = FileRecord(
            key=info.key,
            name=attrs.get(ATTR_ORIGINAL_NAME) or info.key,
            size=info.size,
            type=info.content_type or "application/octet-stream",
            custom_id=attrs.get(ATTR_CUSTOM_ID) or None,
            uploaded_at=info.uploaded_at or now_ms(),
            file_hash=info.checksum or await compute_md5(self.storage, info.key),
        )
        payload = self.build_payload(
            record=record,
            identifier=attrs.get(ATTR_UPLOADED_BY) or "unknown",
            metadata=pending.middleware_metadata if pending else {},
        )
        return self._encode_part(payload.to_json(), "callback")

    async def _monitor_uploads(self, file_keys: list[str], queue: asyncio.Queue) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.dev_poll_timeout_seconds
        outstanding = list(file_keys)
        try:
            while outstanding:
                for key in list(outstanding):
                    try:
                        info = await self.storage.head(key)
                    except StorageError:
                        logger.exception("Error checking file %s", key)
                        continue
                    if info is None:
                        continue
                    outstanding.remove(key)
                    await queue.put(await self._dev_callback_line(info))
                    logger.info("Sent callback for file: %s", key)

                if not outstanding or loop.time() >= deadline:
                    break
                await asyncio.sleep(self.settings.dev_poll_interval_seconds)

            if outstanding:
                logger.warning("Stopped waiting for uploads of %s", outstanding)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Error in upload monitor for %s", file_keys)
            try:
                await queue.put(
                    self._encode_part({"error": str(exc), "fileKeys": file_keys}, "error")
                )
            except Exception:
                logger.exception("Failed to write error to stream")
        finally:
            queue.put_nowait(None)
