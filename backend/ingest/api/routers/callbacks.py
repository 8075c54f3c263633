from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from ingest.api.deps import get_callbacks, require_api_key
from ingest.schemas import CallbackResultRequest, RouteMetadataRequest
from ingest.services.callbacks import CallbackOrchestrator

router = APIRouter(tags=["callbacks"], dependencies=[Depends(require_api_key)])


@router.post("/route-metadata", response_model=None)
async def register_route_metadata(
    payload: RouteMetadataRequest,
    callbacks: CallbackOrchestrator = Depends(get_callbacks),
) -> StreamingResponse | dict[str, bool]:
    await callbacks.register(payload)
    if not payload.is_dev:
        return {"ok": True}

    return StreamingResponse(
        callbacks.stream_dev_events(payload),
        media_type="application/x-ndjson",
        headers={"Cache-Control": "no-cache"},
    )


@router.post("/callback-result")
async def report_callback_result(
    payload: CallbackResultRequest,
    callbacks: CallbackOrchestrator = Depends(get_callbacks),
) -> dict[str, bool]:
    await callbacks.record_failure(payload.file_key, payload.error)
    return {"ok": True}
