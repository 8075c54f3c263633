import logging

from fastapi import Depends, Header, Request

from ingest.core.config import Settings
from ingest.core.exceptions import AuthError, ForbiddenError
from ingest.core.security import TokenError, UploadToken, parse_api_token, validate_api_key
from ingest.core.signing import canonicalize_url, verify_signed_url
from ingest.services.callbacks import CallbackOrchestrator
from ingest.services.files import FileRegistry
from ingest.services.storage import StorageService
from ingest.services.uploads import UploadService

logger = logging.getLogger(__name__)

API_KEY_HEADER = "x-uploadthing-api-key"


def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_storage(request: Request) -> StorageService:
    return request.app.state.storage


def get_registry(request: Request) -> FileRegistry:
    return request.app.state.registry


def get_callbacks(request: Request) -> CallbackOrchestrator:
    return request.app.state.callbacks


def get_upload_service(request: Request) -> UploadService:
    return request.app.state.upload_service


async def require_api_key(
    api_key: str | None = Header(default=None, alias=API_KEY_HEADER),
    settings: Settings = Depends(get_app_settings),
) -> UploadToken:
    if not api_key:
        raise AuthError("Missing API key")
    try:
        token = parse_api_token(api_key)
    except TokenError:
        raise AuthError("Invalid API token format") from None

    if not validate_api_key(token.api_key, settings.upload_secret):
        raise ForbiddenError("Invalid API key")
    return token


async def require_signed_url(
    request: Request,
    settings: Settings = Depends(get_app_settings),
) -> None:
    url = str(request.url)
    if not verify_signed_url(url, settings.signing_key):
        unsigned, _ = canonicalize_url(url)
        logger.warning("Invalid signature for %s %s", request.method, unsigned)
        raise ForbiddenError("Invalid signature")
