from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import StreamingResponse
from starlette.datastructures import UploadFile

from ingest.api.deps import (
    get_app_settings,
    get_upload_service,
    require_signed_url,
)
from ingest.core.config import Settings
from ingest.core.exceptions import ValidationError
from ingest.schemas import UploadPutResult
from ingest.services.storage import CHUNK_SIZE, ByteStream
from ingest.services.uploads import UploadParams, UploadService

router = APIRouter(tags=["ingest"])


@router.get("/")
async def service_status(settings: Settings = Depends(get_app_settings)) -> dict[str, str]:
    return {"status": "ok", "service": settings.service_name}


async def _iter_upload(upload: UploadFile) -> ByteStream:
    while chunk := await upload.read(CHUNK_SIZE):
        yield chunk


@router.head("/{file_key}", dependencies=[Depends(require_signed_url)])
async def upload_offset(
    file_key: str,
    uploads: UploadService = Depends(get_upload_service),
) -> Response:
    range_start = await uploads.range_start(file_key)
    return Response(
        status_code=status.HTTP_200_OK,
        headers={"x-ut-range-start": str(range_start), "Content-Length": "0"},
    )


@router.put(
    "/{file_key}",
    response_model=UploadPutResult,
    dependencies=[Depends(require_signed_url)],
)
async def upload_file(
    file_key: str,
    request: Request,
    uploads: UploadService = Depends(get_upload_service),
) -> UploadPutResult:
    params = UploadParams.from_query(request.query_params)
    range_header = request.headers.get("range")

    if "multipart/form-data" in request.headers.get("content-type", ""):
        form = await request.form()
        try:
            upload = form.get("file")
            if not isinstance(upload, UploadFile):
                raise ValidationError("No file provided")
            return await uploads.handle_put(
                file_key,
                params,
                _iter_upload(upload),
                content_type=upload.content_type or None,
                range_header=range_header,
            )
        finally:
            await form.close()

    return await uploads.handle_put(
        file_key,
        params,
        request.stream(),
        range_header=range_header,
    )


async def _serve_file(file_key: str, request: Request, uploads: UploadService) -> StreamingResponse:
    stored, byte_range = await uploads.open_download(file_key, request.headers.get("range"))
    info = stored.info
    headers = {"Content-Length": str(info.size), "Accept-Ranges": "bytes"}
    if info.etag:
        headers["ETag"] = f'"{info.etag}"'
    if info.content_disposition:
        headers["Content-Disposition"] = info.content_disposition

    status_code = status.HTTP_200_OK
    if byte_range is not None:
        start, end = byte_range
        headers["Content-Range"] = f"bytes {start}-{end}/{info.size}"
        headers["Content-Length"] = str(end - start + 1)
        status_code = status.HTTP_206_PARTIAL_CONTENT

    return StreamingResponse(
        stored.body,
        status_code=status_code,
        headers=headers,
        media_type=info.content_type,
    )


@router.get("/f/{file_key}")
async def download_file(
    file_key: str,
    request: Request,
    uploads: UploadService = Depends(get_upload_service),
) -> StreamingResponse:
    return await _serve_file(file_key, request, uploads)


@router.get("/a/{app_id}/{file_key}")
async def download_app_file(
    app_id: str,
    file_key: str,
    request: Request,
    uploads: UploadService = Depends(get_upload_service),
) -> StreamingResponse:
    return await _serve_file(file_key, request, uploads)
