from fastapi import APIRouter, Query

from ingest.core.exceptions import ValidationError
from ingest.core.security import encode_api_token

router = APIRouter(tags=["internal"])


@router.get("/genkey")
async def generate_api_token(secret: str | None = Query(default=None)) -> dict[str, str]:
    """Encode ``secret`` as a structured token for client configuration."""
    if not secret:
        raise ValidationError("Missing secret")
    return {"status": "ok", "key": encode_api_token(secret)}
