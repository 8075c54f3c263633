import hashlib
import json

import pytest

from ingest.core.signing import verify_signature
from ingest.services.files import METADATA_PREFIX


async def _register(client, api_headers, **body):
    payload = {"fileKeys": ["key1"], "metadata": {"userId": "u-1"}}
    payload.update(body)
    return await client.post("/route-metadata", json=payload, headers=api_headers)


def _lines(response) -> list[dict]:
    return [json.loads(line) for line in response.text.splitlines() if line]


@pytest.mark.asyncio
async def test_webhook_delivery_end_to_end(
    client, app_instance, settings, signed_url, webhooks, api_headers
):
    registered = await _register(client, api_headers, callbackUrl="https://origin/api")
    assert registered.status_code == 200
    assert registered.json() == {"ok": True}

    response = await client.put(signed_url("key1"), content=b"abc")
    assert response.status_code == 200
    await app_instance.state.runner.join()

    assert len(webhooks.requests) == 1
    request = webhooks.requests[0]
    assert str(request.url) == "https://origin/api?slug=default"
    assert request.headers["uploadthing-hook"] == "callback"
    assert request.headers["content-type"] == "application/json"
    assert verify_signature(
        request.content, settings.webhook_signing_key, request.headers["x-uploadthing-signature"]
    )

    payload = json.loads(request.content)
    assert payload["status"] == "uploaded"
    assert payload["origin"] == "http://testserver"
    assert payload["metadata"] == {"userId": "u-1"}
    assert payload["file"]["key"] == "key1"
    assert payload["file"]["size"] == 3
    assert payload["file"]["name"] == "hello.txt"
    assert payload["file"]["fileHash"] == hashlib.md5(b"abc").hexdigest()
    assert payload["file"]["url"] == "http://testserver/f/key1"


@pytest.mark.asyncio
async def test_upload_without_registration_sends_nothing(
    client, app_instance, signed_url, webhooks
):
    response = await client.put(signed_url("key1"), content=b"abc")
    assert response.status_code == 200
    await app_instance.state.runner.join()
    assert webhooks.requests == []


@pytest.mark.asyncio
async def test_failed_webhook_does_not_fail_upload(
    client, app_instance, signed_url, webhooks, api_headers
):
    webhooks.status_code = 500
    await _register(client, api_headers, callbackUrl="https://origin/api", callbackSlug="images")

    response = await client.put(signed_url("key1"), content=b"abc")
    assert response.status_code == 200
    await app_instance.state.runner.join()
    assert str(webhooks.requests[0].url) == "https://origin/api?slug=images"


@pytest.mark.asyncio
async def test_await_server_data_returns_origin_response(
    client, signed_url, webhooks, api_headers
):
    webhooks.response_json = {"uploadedBy": "u-1"}
    await _register(
        client, api_headers, callbackUrl="https://origin/api", awaitServerData=True
    )

    response = await client.put(signed_url("key1"), content=b"abc")
    assert response.status_code == 200
    assert response.json()["serverData"] == {"uploadedBy": "u-1"}


@pytest.mark.asyncio
async def test_client_base_url_fallback(client, app_instance, signed_url, webhooks):
    app_instance.state.settings.client_base_url = "https://client.example"

    response = await client.put(signed_url("key1", {"x-ut-slug": "avatars"}), content=b"abc")
    assert response.status_code == 200
    await app_instance.state.runner.join()
    assert str(webhooks.requests[0].url) == "https://client.example/api/uploadthing?slug=avatars"


@pytest.mark.asyncio
async def test_registration_is_idempotent(client, registry, api_headers):
    await _register(client, api_headers, fileKeys=["a", "b"], callbackUrl="https://one")
    await _register(client, api_headers, fileKeys=["a", "b"], callbackUrl="https://two")

    keys = await registry.store.list_keys(METADATA_PREFIX)
    assert keys == [f"{METADATA_PREFIX}a", f"{METADATA_PREFIX}b"]
    pending = await registry.get_pending("a")
    assert pending.callback_url == "https://two"
    assert pending.middleware_metadata == {"userId": "u-1"}


@pytest.mark.asyncio
async def test_registration_requires_api_key(client):
    response = await client.post("/route-metadata", json={"fileKeys": ["a"]})
    assert response.status_code == 401

    wrong = await client.post(
        "/route-metadata", json={"fileKeys": ["a"]}, headers={"x-uploadthing-api-key": "nope"}
    )
    assert wrong.status_code == 403


@pytest.mark.asyncio
async def test_registration_requires_file_keys(client, api_headers):
    response = await client.post("/route-metadata", json={"fileKeys": []}, headers=api_headers)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_dev_stream_emits_signed_callback_line(
    client, settings, signed_url, webhooks, api_headers
):
    await client.put(signed_url("key1"), content=b"abc")

    response = await _register(client, api_headers, isDev=True, callbackUrl="https://origin/api")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/x-ndjson")
    assert response.headers["cache-control"] == "no-cache"

    lines = _lines(response)
    assert len(lines) == 1
    part = lines[0]
    assert part["hook"] == "callback"
    assert verify_signature(part["payload"], settings.webhook_signing_key, part["signature"])
    payload = json.loads(part["payload"])
    assert payload["file"]["key"] == "key1"
    assert payload["file"]["size"] == 3
    assert payload["file"]["fileHash"] == hashlib.md5(b"abc").hexdigest()
    assert payload["metadata"] == {"userId": "u-1"}
    assert webhooks.requests == []


@pytest.mark.asyncio
async def test_dev_stream_ends_at_deadline(client, app_instance, signed_url, webhooks, api_headers):
    response = await _register(client, api_headers, isDev=True, callbackUrl="https://origin/api")
    assert response.status_code == 200
    assert response.text == ""

    # A dev registration suppresses the production webhook for its keys.
    await client.put(signed_url("key1"), content=b"abc")
    await app_instance.state.runner.join()
    assert webhooks.requests == []


@pytest.mark.asyncio
async def test_dev_stream_reports_monitor_failure(
    client, settings, storage, monkeypatch, api_headers
):
    async def broken_head(key):
        raise RuntimeError("disk on fire")

    monkeypatch.setattr(storage, "head", broken_head)

    response = await _register(client, api_headers, isDev=True)
    lines = _lines(response)
    assert len(lines) == 1
    assert lines[0]["hook"] == "error"
    assert verify_signature(lines[0]["payload"], settings.webhook_signing_key, lines[0]["signature"])
    assert json.loads(lines[0]["payload"]) == {"error": "disk on fire", "fileKeys": ["key1"]}


@pytest.mark.asyncio
async def test_callback_result_records_error(client, registry, api_headers):
    response = await client.post(
        "/callback-result",
        json={"fileKey": "key1", "error": "origin rejected file"},
        headers=api_headers,
    )
    assert response.status_code == 200
    assert response.json() == {"ok": True}
    error = await registry.get_error("key1")
    assert error.error == "origin rejected file"
