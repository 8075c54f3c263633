import logging

from fastapi import APIRouter, Depends

from ingest.api.deps import (
    get_app_settings,
    get_registry,
    get_storage,
    require_api_key,
)
from ingest.core.config import Settings
from ingest.core.exceptions import NotFoundError, StorageError, ValidationError
from ingest.core.security import UploadToken
from ingest.core.signing import build_signed_url, generate_file_key
from ingest.schemas.api import (
    CompleteMultipartRequest,
    DeleteFilesRequest,
    DeleteFilesResponse,
    FailureCallbackRequest,
    FileAccessRequest,
    FileAccessResponse,
    ListedFile,
    ListFilesRequest,
    ListFilesResponse,
    PolledFile,
    PollUploadResponse,
    PresignedFile,
    RenameFilesRequest,
    RenameFilesResponse,
    SuccessResponse,
    UpdateAclRequest,
    UpdateAclResponse,
    UploadFilesRequest,
    UploadFilesResponse,
    UsageInfo,
)
from ingest.services.files import FileRegistry, file_urls, public_file_url
from ingest.services.storage import StorageService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v6", tags=["v6"], dependencies=[Depends(require_api_key)])


@router.post("/uploadFiles", response_model=UploadFilesResponse)
async def upload_files(
    payload: UploadFilesRequest,
    token: UploadToken = Depends(require_api_key),
    settings: Settings = Depends(get_app_settings),
) -> UploadFilesResponse:
    presigned = []
    for file in payload.files:
        key = generate_file_key()
        params = {
            "x-ut-identifier": token.app_id,
            "x-ut-file-name": file.name,
            "x-ut-file-size": str(file.size),
            "x-ut-file-type": file.type,
            "x-ut-content-disposition": payload.content_disposition,
            "x-ut-acl": payload.acl,
        }
        if file.custom_id:
            params["x-ut-custom-id"] = file.custom_id
        url = build_signed_url(
            settings.api_base_url,
            key,
            params,
            settings.upload_url_ttl_seconds,
            settings.signing_key,
        )
        presigned.append(
            PresignedFile(
                key=key,
                file_name=file.name,
                file_type=file.type,
                file_url=public_file_url(settings, key),
                url=url,
                custom_id=file.custom_id,
                content_disposition=payload.content_disposition,
                polling_url=f"{settings.api_base_url.rstrip('/')}/v6/pollUpload/{key}",
            )
        )
    logger.info("Presigned %d upload(s) for app %s", len(presigned), token.app_id)
    return UploadFilesResponse(data=presigned)


@router.post("/deleteFiles", response_model=DeleteFilesResponse)
async def delete_files(
    payload: DeleteFilesRequest,
    storage: StorageService = Depends(get_storage),
    registry: FileRegistry = Depends(get_registry),
) -> DeleteFilesResponse:
    if not payload.file_keys and not payload.custom_ids:
        raise ValidationError("Must provide fileKeys or customIds")

    keys = list(payload.file_keys or [])
    for custom_id in payload.custom_ids or []:
        key = await registry.find_key_by_custom_id(custom_id)
        if key is None:
            logger.info("No file found for custom id %s", custom_id)
            continue
        keys.append(key)

    deleted = 0
    for key in dict.fromkeys(keys):
        try:
            await storage.delete(key)
            await registry.delete_record(key)
        except StorageError:
            logger.exception("Failed to delete %s", key)
            continue
        deleted += 1
    return DeleteFilesResponse(deleted_count=deleted)


@router.post("/listFiles", response_model=ListFilesResponse)
async def list_files(
    payload: ListFilesRequest,
    registry: FileRegistry = Depends(get_registry),
) -> ListFilesResponse:
    records, has_more = await registry.list_records(payload.limit, payload.offset)
    return ListFilesResponse(
        has_more=has_more,
        files=[
            ListedFile(
                id=record.key,
                custom_id=record.custom_id,
                key=record.key,
                name=record.name,
                size=record.size,
                uploaded_at=record.uploaded_at,
            )
            for record in records
        ],
    )


@router.post("/getUsageInfo", response_model=UsageInfo)
async def get_usage_info(registry: FileRegistry = Depends(get_registry)) -> UsageInfo:
    total_bytes, files = await registry.usage()
    return UsageInfo(total_bytes=total_bytes, app_total_bytes=total_bytes, files_uploaded=files)


@router.post("/requestFileAccess", response_model=FileAccessResponse)
async def request_file_access(
    payload: FileAccessRequest,
    settings: Settings = Depends(get_app_settings),
    registry: FileRegistry = Depends(get_registry),
) -> FileAccessResponse:
    if not payload.file_key and not payload.custom_id:
        raise ValidationError("Must provide fileKey or customId")
    key = await registry.resolve_key(payload.file_key, payload.custom_id)
    if key is None or await registry.get_record(key) is None:
        raise NotFoundError("File not found")
    url, _, ufs_url = file_urls(settings, key, None)
    return FileAccessResponse(url=url, ufs_url=ufs_url)


@router.get("/pollUpload/{file_key}", response_model=PollUploadResponse)
async def poll_upload(
    file_key: str,
    settings: Settings = Depends(get_app_settings),
    storage: StorageService = Depends(get_storage),
    registry: FileRegistry = Depends(get_registry),
) -> PollUploadResponse:
    record = await registry.get_record(file_key)
    pending = await registry.get_pending(file_key)
    metadata = pending.middleware_metadata if pending else None

    if record is None:
        if pending is None and await storage.head(file_key) is None:
            raise NotFoundError("File not found")
        return PollUploadResponse(status="still working", metadata=metadata)

    return PollUploadResponse(
        status="done",
        file=PolledFile(
            file_key=record.key,
            file_name=record.name,
            file_size=record.size,
            file_type=record.type,
            file_url=public_file_url(settings, record.key),
            custom_id=record.custom_id,
        ),
        metadata=metadata,
    )


@router.post("/renameFiles", response_model=RenameFilesResponse)
async def rename_files(
    payload: RenameFilesRequest,
    registry: FileRegistry = Depends(get_registry),
) -> RenameFilesResponse:
    renamed = 0
    for update in payload.updates:
        key = await registry.resolve_key(update.file_key, update.custom_id)
        if key is None or not update.new_name:
            continue
        if await registry.rename(key, update.new_name):
            renamed += 1
    return RenameFilesResponse(renamed_count=renamed)


@router.post("/updateACL", response_model=UpdateAclResponse)
async def update_acl(
    payload: UpdateAclRequest,
    registry: FileRegistry = Depends(get_registry),
) -> UpdateAclResponse:
    updated = 0
    for update in payload.updates:
        key = await registry.resolve_key(update.file_key, update.custom_id)
        if key is None or not update.acl:
            continue
        if await registry.update_acl(key, update.acl):
            updated += 1
    return UpdateAclResponse(updated_count=updated)


@router.post("/completeMultipart", response_model=SuccessResponse)
async def complete_multipart(
    payload: CompleteMultipartRequest,
    registry: FileRegistry = Depends(get_registry),
) -> SuccessResponse:
    if not await registry.mark_completed(payload.file_key):
        logger.info("completeMultipart for unknown file %s", payload.file_key)
    return SuccessResponse()


@router.post("/failureCallback", response_model=SuccessResponse)
async def failure_callback(
    payload: FailureCallbackRequest,
    registry: FileRegistry = Depends(get_registry),
) -> SuccessResponse:
    await registry.record_error(payload.file_key, "Upload failed", payload.upload_id)
    logger.warning("Upload failure recorded for %s", payload.file_key)
    return SuccessResponse()
