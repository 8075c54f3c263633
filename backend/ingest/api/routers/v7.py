import logging

from fastapi import APIRouter, Depends

from ingest.api.deps import get_app_settings, require_api_key
from ingest.core.config import Settings
from ingest.core.security import UploadToken
from ingest.core.signing import build_signed_url, generate_file_key
from ingest.schemas.api import AppInfo, PrepareUploadRequest, PrepareUploadResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v7", tags=["v7"])


@router.post("/getAppInfo", response_model=AppInfo)
async def get_app_info(
    token: UploadToken = Depends(require_api_key),
    settings: Settings = Depends(get_app_settings),
) -> AppInfo:
    return AppInfo(
        app_id=token.app_id,
        default_acl=settings.default_acl,
        allow_acl_override=settings.allow_acl_override,
    )


@router.post("/prepareUpload", response_model=PrepareUploadResponse)
async def prepare_upload(
    payload: PrepareUploadRequest,
    token: UploadToken = Depends(require_api_key),
    settings: Settings = Depends(get_app_settings),
) -> PrepareUploadResponse:
    key = generate_file_key()
    params = {
        "x-ut-identifier": token.app_id,
        "x-ut-file-name": payload.file_name,
        "x-ut-file-size": str(payload.file_size),
        "x-ut-file-type": payload.file_type or "application/octet-stream",
        "x-ut-content-disposition": payload.content_disposition or "inline",
    }
    if payload.acl:
        params["x-ut-acl"] = payload.acl
    if payload.custom_id:
        params["x-ut-custom-id"] = payload.custom_id

    url = build_signed_url(
        settings.api_base_url,
        key,
        params,
        payload.expires_in or settings.upload_url_ttl_seconds,
        settings.signing_key,
    )
    logger.info("Prepared upload %s for app %s", key, token.app_id)
    return PrepareUploadResponse(key=key, url=url)
