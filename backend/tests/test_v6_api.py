import base64
import json

import pytest

from ingest.core.security import encode_api_token
from ingest.core.signing import verify_signed_url


async def _upload(client, signed_url, key: str, content: bytes, custom_id: str | None = None):
    params = {"x-ut-file-name": f"{key}.txt"}
    if custom_id:
        params["x-ut-custom-id"] = custom_id
    response = await client.put(signed_url(key, params), content=content)
    assert response.status_code == 200


@pytest.mark.asyncio
async def test_v6_requires_api_key(client):
    missing = await client.post("/v6/listFiles", json={})
    assert missing.status_code == 401

    malformed = await client.post(
        "/v6/listFiles", json={}, headers={"x-uploadthing-api-key": "not-base64-!!!"}
    )
    assert malformed.status_code == 401

    wrong = await client.post(
        "/v6/listFiles", json={}, headers={"x-uploadthing-api-key": "sk_live_wrong"}
    )
    assert wrong.status_code == 403


@pytest.mark.asyncio
async def test_structured_token_is_accepted(client, api_headers):
    token = encode_api_token(api_headers["x-uploadthing-api-key"], app_id="myapp")
    response = await client.post("/v7/getAppInfo", headers={"x-uploadthing-api-key": token})
    assert response.status_code == 200
    assert response.json() == {
        "appId": "myapp",
        "defaultACL": "public-read",
        "allowACLOverride": False,
    }


@pytest.mark.asyncio
async def test_prepare_upload_returns_working_url(client, settings, api_headers, registry):
    response = await client.post(
        "/v7/prepareUpload",
        json={"fileName": "report.pdf", "fileSize": 5, "fileType": "application/pdf"},
        headers=api_headers,
    )
    assert response.status_code == 200
    body = response.json()
    assert len(body["key"]) == 24
    assert verify_signed_url(body["url"], settings.signing_key)
    assert "x-ut-identifier=fkapp" in body["url"]

    upload = await client.put(body["url"], content=b"%PDF!")
    assert upload.status_code == 200
    record = await registry.get_record(body["key"])
    assert record.name == "report.pdf"
    assert record.type == "application/pdf"


@pytest.mark.asyncio
async def test_upload_files_presigns_each_file(client, settings, api_headers):
    response = await client.post(
        "/v6/uploadFiles",
        json={
            "files": [
                {"name": "a.txt", "size": 1, "type": "text/plain"},
                {"name": "b.png", "size": 2, "type": "image/png", "customId": "cid-b"},
            ]
        },
        headers=api_headers,
    )
    assert response.status_code == 200
    data = response.json()["data"]
    assert [item["fileName"] for item in data] == ["a.txt", "b.png"]
    assert data[1]["customId"] == "cid-b"
    for item in data:
        assert item["fileUrl"] == f"http://testserver/f/{item['key']}"
        assert item["pollingUrl"] == f"http://testserver/v6/pollUpload/{item['key']}"
        assert item["contentDisposition"] == "inline"
        assert verify_signed_url(item["url"], settings.signing_key)


@pytest.mark.asyncio
async def test_list_and_usage(client, signed_url, api_headers):
    await _upload(client, signed_url, "k1", b"abc")
    await _upload(client, signed_url, "k2", b"defgh", custom_id="cid-2")

    listed = await client.post("/v6/listFiles", json={"limit": 1}, headers=api_headers)
    assert listed.status_code == 200
    body = listed.json()
    assert body["hasMore"] is True
    assert [item["key"] for item in body["files"]] == ["k1"]

    rest = await client.post("/v6/listFiles", json={"limit": 1, "offset": 1}, headers=api_headers)
    assert rest.json()["hasMore"] is False
    assert rest.json()["files"][0]["customId"] == "cid-2"
    assert rest.json()["files"][0]["status"] == "Uploaded"

    usage = await client.post("/v6/getUsageInfo", headers=api_headers)
    assert usage.json() == {
        "totalBytes": 8,
        "appTotalBytes": 8,
        "filesUploaded": 2,
        "limitBytes": -1,
    }


@pytest.mark.asyncio
async def test_delete_files_by_key_and_custom_id(client, signed_url, api_headers, registry, storage):
    await _upload(client, signed_url, "k1", b"abc")
    await _upload(client, signed_url, "k2", b"def", custom_id="cid-2")

    response = await client.post(
        "/v6/deleteFiles",
        json={"fileKeys": ["k1"], "customIds": ["cid-2", "unknown"]},
        headers=api_headers,
    )
    assert response.status_code == 200
    assert response.json() == {"success": True, "deletedCount": 2}
    assert await storage.head("k1") is None
    assert await registry.get_record("k2") is None
    assert await registry.find_key_by_custom_id("cid-2") is None

    empty = await client.post("/v6/deleteFiles", json={}, headers=api_headers)
    assert empty.status_code == 400


@pytest.mark.asyncio
async def test_request_file_access(client, signed_url, api_headers):
    await _upload(client, signed_url, "k1", b"abc", custom_id="cid-1")

    by_custom_id = await client.post(
        "/v6/requestFileAccess", json={"customId": "cid-1"}, headers=api_headers
    )
    assert by_custom_id.json() == {
        "url": "http://testserver/f/k1",
        "ufsUrl": "http://testserver/f/k1",
    }

    unknown = await client.post(
        "/v6/requestFileAccess", json={"fileKey": "nope"}, headers=api_headers
    )
    assert unknown.status_code == 404

    neither = await client.post("/v6/requestFileAccess", json={}, headers=api_headers)
    assert neither.status_code == 400


@pytest.mark.asyncio
async def test_poll_upload(client, signed_url, api_headers):
    await client.post(
        "/route-metadata",
        json={"fileKeys": ["k1"], "metadata": {"userId": "u-1"}},
        headers=api_headers,
    )
    pending = await client.get("/v6/pollUpload/k1", headers=api_headers)
    assert pending.json()["status"] == "still working"
    assert pending.json()["metadata"] == {"userId": "u-1"}

    await _upload(client, signed_url, "k1", b"abc")
    done = await client.get("/v6/pollUpload/k1", headers=api_headers)
    body = done.json()
    assert body["status"] == "done"
    assert body["file"]["fileSize"] == 3
    assert body["file"]["fileUrl"] == "http://testserver/f/k1"

    unknown = await client.get("/v6/pollUpload/nope", headers=api_headers)
    assert unknown.status_code == 404


@pytest.mark.asyncio
async def test_rename_and_update_acl(client, signed_url, api_headers, registry):
    await _upload(client, signed_url, "k1", b"abc", custom_id="cid-1")

    renamed = await client.post(
        "/v6/renameFiles",
        json={"updates": [{"customId": "cid-1", "newName": "renamed.txt"}, {"fileKey": "nope", "newName": "x"}]},
        headers=api_headers,
    )
    assert renamed.json() == {"success": True, "renamedCount": 1}

    updated = await client.post(
        "/v6/updateACL",
        json={"updates": [{"fileKey": "k1", "acl": "private"}]},
        headers=api_headers,
    )
    assert updated.json() == {"success": True, "updatedCount": 1}

    record = await registry.get_record("k1")
    assert record.name == "renamed.txt"
    assert record.acl == "private"
    assert record.custom_id == "cid-1"


@pytest.mark.asyncio
async def test_complete_multipart_and_failure_callback(client, signed_url, api_headers, registry):
    await _upload(client, signed_url, "k1", b"abc")
    before = (await registry.get_record("k1")).uploaded_at

    completed = await client.post(
        "/v6/completeMultipart", json={"fileKey": "k1"}, headers=api_headers
    )
    assert completed.json() == {"success": True}
    assert (await registry.get_record("k1")).uploaded_at >= before

    failed = await client.post(
        "/v6/failureCallback", json={"fileKey": "k2", "uploadId": "up-1"}, headers=api_headers
    )
    assert failed.json() == {"success": True}
    error = await registry.get_error("k2")
    assert error.upload_id == "up-1"


@pytest.mark.asyncio
async def test_genkey(client):
    response = await client.get("/genkey", params={"secret": "sk_live_abc"})
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    decoded = json.loads(base64.b64decode(body["key"]))
    assert decoded == {"appId": "fkapp", "apiKey": "sk_live_abc", "regions": ["fukusu-server"]}

    missing = await client.get("/genkey")
    assert missing.status_code == 400
