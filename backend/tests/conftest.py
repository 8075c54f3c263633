import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from ingest.core.config import Settings
from ingest.core.signing import build_signed_url
from ingest.main import create_app, shutdown, startup
from ingest.services.files import FileRegistry
from ingest.services.storage import LocalStorageService

TEST_SECRET = "sk_test_ingest-secret"


class WebhookRecorder:
    """Stands in for the origin server; records every webhook it receives."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.status_code = 200
        self.response_json: object = {"received": True}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json=self.response_json)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        ENV="test",
        DEBUG=False,
        UPLOAD_SECRET=TEST_SECRET,
        API_BASE_URL="http://testserver",
        CLIENT_BASE_URL=None,
        DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'ingest.db'}",
        STORAGE_BACKEND="local",
        LOCAL_STORAGE_DIR=str(tmp_path / "blobs"),
        DEV_POLL_INTERVAL_SECONDS=0.05,
        DEV_POLL_TIMEOUT_SECONDS=0.5,
        CALLBACK_TIMEOUT_SECONDS=2.0,
    )


@pytest.fixture
def webhooks() -> WebhookRecorder:
    return WebhookRecorder()


@pytest_asyncio.fixture
async def app_instance(settings, webhooks):
    app = create_app(settings)

    # Setup state for tests, mimicking lifespan events
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(webhooks))
    await startup(app, settings, http_client=http_client)
    yield app
    await shutdown(app)


@pytest_asyncio.fixture
async def client(app_instance):
    transport = ASGITransport(app=app_instance)
    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        yield client


@pytest.fixture
def storage(app_instance) -> LocalStorageService:
    return app_instance.state.storage


@pytest.fixture
def registry(app_instance) -> FileRegistry:
    return app_instance.state.registry


@pytest.fixture
def api_headers() -> dict[str, str]:
    return {"x-uploadthing-api-key": TEST_SECRET}


@pytest.fixture
def signed_url(settings):
    def _build(key: str, params: dict[str, str] | None = None, expires_in: int = 3600) -> str:
        query = {
            "x-ut-identifier": "fkapp",
            "x-ut-file-name": "hello.txt",
            "x-ut-file-type": "text/plain",
        }
        query.update(params or {})
        return build_signed_url(
            settings.api_base_url, key, query, expires_in, settings.signing_key
        )

    return _build
