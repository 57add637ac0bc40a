import asyncio
import math

import pytest
from fastapi import status
from jose import jwt

from chunkbridge.core.config import GIB, MIB, settings
from chunkbridge.core.security import get_current_user
from chunkbridge.features.uploads.models import FileRecord, FileStatus, GetUrlsRequest
from chunkbridge.features.uploads.repository import ChunkLedger, FileRecordStore
from chunkbridge.features.uploads.service import UploadOrchestrator
from chunkbridge.main import app
from chunkbridge.shared.exceptions import ConflictError


TEST_BUCKET_NAME = "test-bucket"


def binding_key(upload_id: str) -> str:
    return f"chunkbridge:upload-session:{upload_id}"


async def begin_upload(client, payload):
    response = await client.post("/files/get-urls", json=payload)
    assert response.status_code == status.HTTP_200_OK, response.text
    return response.json()


async def upload_all_parts(client, storage, payload, body):
    """模拟浏览器逐个PUT分片并上报，返回完成请求需要的分片清单"""
    parts = []
    for number, _url in enumerate(body["presignedUrls"], start=1):
        etag = storage.upload_part(body["uploadId"], number, f"part-{number}".encode())
        response = await client.post("/files/record-chunk", json={
            "file_id": payload["file_id"],
            "chunk_index": number,
            "size": 5 * MIB,
            "etag": etag,
            "storage_key": payload["storage_key"],
        })
        assert response.status_code == status.HTTP_200_OK, response.text
        parts.append({"PartNumber": number, "ETag": etag})
    return parts


async def load_record(session_factory, file_id):
    async with session_factory() as db:
        return await FileRecordStore(db).get(file_id)


@pytest.mark.parametrize("file_size", [1, 5 * MIB, 5 * MIB + 1, 12 * MIB, GIB])
async def test_get_urls_issues_one_url_per_part(client, upload_request, session_factory, file_size):
    upload_request["file_size"] = file_size

    body = await begin_upload(client, upload_request)

    assert body["success"] is True
    assert len(body["presignedUrls"]) == math.ceil(file_size / (5 * MIB))
    assert body["uploadId"]

    record = await load_record(session_factory, upload_request["file_id"])
    assert record.status == FileStatus.UPLOADING.value
    assert record.upload_id == body["uploadId"]
    assert record.owner_id == "user-1"


async def test_get_urls_binds_session_with_ttl(client, upload_request, redis_client):
    body = await begin_upload(client, upload_request)

    key = binding_key(body["uploadId"])
    assert key in redis_client.data
    assert redis_client.ttls[key] == settings.session_ttl


@pytest.mark.parametrize("file_size", [0, -1, GIB + 1])
async def test_get_urls_rejects_invalid_size(client, upload_request, storage, session_factory, file_size):
    upload_request["file_size"] = file_size

    response = await client.post("/files/get-urls", json=upload_request)

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["success"] is False
    assert response.json()["error_type"] == "InvalidSize"
    assert storage.uploads == {}
    assert await load_record(session_factory, upload_request["file_id"]) is None


async def test_get_urls_missing_field(client, upload_request):
    del upload_request["storage_key"]

    response = await client.post("/files/get-urls", json=upload_request)

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["error_type"] == "InvalidInput"


async def test_get_urls_existing_file_id_conflicts(client, upload_request, storage):
    await begin_upload(client, upload_request)

    response = await client.post("/files/get-urls", json=upload_request)

    assert response.status_code == status.HTTP_409_CONFLICT
    assert len(storage.uploads) == 1


async def test_initiate_failure_leaves_no_record(client, upload_request, storage, session_factory):
    storage.fail_initiate = True

    response = await client.post("/files/get-urls", json=upload_request)

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert response.json()["error_type"] == "StorageUnavailable"
    assert await load_record(session_factory, upload_request["file_id"]) is None


async def test_presign_failure_cleans_up(client, upload_request, storage, redis_client, session_factory):
    storage.fail_presign_part = 2

    response = await client.post("/files/get-urls", json=upload_request)

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert await load_record(session_factory, upload_request["file_id"]) is None
    assert storage.uploads == {}
    assert len(storage.aborted) == 1
    assert redis_client.data == {}


async def test_record_chunk_duplicate_keeps_one_row(client, upload_request, storage, session_factory):
    body = await begin_upload(client, upload_request)
    etag = storage.upload_part(body["uploadId"], 1, b"first")
    chunk = {
        "file_id": upload_request["file_id"],
        "chunk_index": 1,
        "size": 5 * MIB,
        "etag": etag,
        "storage_key": upload_request["storage_key"],
    }

    first = await client.post("/files/record-chunk", json=chunk)
    second = await client.post("/files/record-chunk", json=chunk)

    assert first.status_code == status.HTTP_200_OK
    assert first.json() == {"success": True, "message": None}
    assert second.status_code == status.HTTP_409_CONFLICT
    assert second.json()["error_type"] == "DuplicateChunk"
    async with session_factory() as db:
        assert await ChunkLedger(db).count(upload_request["file_id"]) == 1


async def test_record_chunk_concurrent_duplicate(client, upload_request, storage, session_factory):
    body = await begin_upload(client, upload_request)
    etag = storage.upload_part(body["uploadId"], 1, b"first")
    chunk = {
        "file_id": upload_request["file_id"],
        "chunk_index": 1,
        "size": 5 * MIB,
        "etag": etag,
        "storage_key": upload_request["storage_key"],
    }

    # 每个请求使用独立的数据库会话，只有唯一约束能挡住第二次写入
    responses = await asyncio.gather(
        client.post("/files/record-chunk", json=chunk),
        client.post("/files/record-chunk", json=chunk),
    )

    assert sorted(r.status_code for r in responses) == [status.HTTP_200_OK, status.HTTP_409_CONFLICT]
    conflict = next(r for r in responses if r.status_code == status.HTTP_409_CONFLICT)
    assert conflict.json()["error_type"] == "DuplicateChunk"
    async with session_factory() as db:
        assert await ChunkLedger(db).count(upload_request["file_id"]) == 1


@pytest.mark.parametrize("final_status", [FileStatus.UPLOADED, FileStatus.FAILED])
async def test_record_chunk_after_upload_finished(client, upload_request, session_factory, final_status):
    await begin_upload(client, upload_request)
    async with session_factory() as db:
        await FileRecordStore(db).set_status(upload_request["file_id"], final_status)

    response = await client.post("/files/record-chunk", json={
        "file_id": upload_request["file_id"],
        "chunk_index": 1,
        "size": MIB,
        "etag": '"abc"',
        "storage_key": upload_request["storage_key"],
    })

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["error_type"] == "InvalidChunk"
    async with session_factory() as db:
        assert await ChunkLedger(db).count(upload_request["file_id"]) == 0


async def test_record_chunk_after_complete_is_rejected(client, upload_request, storage):
    body = await begin_upload(client, upload_request)
    parts = await upload_all_parts(client, storage, upload_request, body)
    response = await client.post("/files/complete-upload", json={
        "uploadId": body["uploadId"],
        "parts": parts,
        "fileId": upload_request["file_id"],
    })
    assert response.status_code == status.HTTP_200_OK

    response = await client.post("/files/record-chunk", json={
        "file_id": upload_request["file_id"],
        "chunk_index": 1,
        "size": 5 * MIB,
        "etag": parts[0]["ETag"],
        "storage_key": upload_request["storage_key"],
    })

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["error_type"] == "InvalidChunk"


async def test_losing_create_race_keeps_winner_chunks(
    upload_request, session_factory, session_cache, gateways, storage, redis_client, monkeypatch
):
    file_id = upload_request["file_id"]
    async with session_factory() as db:
        await FileRecordStore(db).create(FileRecord(
            file_id=file_id,
            file_name=upload_request["file_name"],
            mime_type=upload_request["mime_type"],
            size=upload_request["file_size"],
            storage_key=upload_request["storage_key"],
            owner_id="user-1",
            status=FileStatus.UPLOADING.value,
            upload_id="winner-upload",
        ))
        await ChunkLedger(db).record(file_id, 1, 5 * MIB, '"winner"', upload_request["storage_key"])

    async with session_factory() as db:
        orchestrator = UploadOrchestrator(db, session_cache, gateways)

        # 模拟两个请求都通过了存在性检查，随后在写入时才发生冲突
        async def not_found(_file_id):
            return None

        monkeypatch.setattr(orchestrator.files, "get", not_found)

        with pytest.raises(ConflictError):
            await orchestrator.begin_session(GetUrlsRequest(**upload_request))

    record = await load_record(session_factory, file_id)
    assert record.upload_id == "winner-upload"
    async with session_factory() as db:
        assert await ChunkLedger(db).count(file_id) == 1
    assert len(storage.aborted) == 1
    assert redis_client.data == {}


@pytest.mark.parametrize("chunk_index", [0, 4])
async def test_record_chunk_index_out_of_range(client, upload_request, chunk_index):
    await begin_upload(client, upload_request)

    response = await client.post("/files/record-chunk", json={
        "file_id": upload_request["file_id"],
        "chunk_index": chunk_index,
        "size": MIB,
        "etag": '"abc"',
        "storage_key": upload_request["storage_key"],
    })

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["error_type"] == "InvalidChunk"


async def test_record_chunk_storage_key_mismatch(client, upload_request):
    await begin_upload(client, upload_request)

    response = await client.post("/files/record-chunk", json={
        "file_id": upload_request["file_id"],
        "chunk_index": 1,
        "size": MIB,
        "etag": '"abc"',
        "storage_key": "uploads/someone-else/report.pdf",
    })

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["error_type"] == "InvalidChunk"


async def test_record_chunk_missing_etag(client, upload_request):
    await begin_upload(client, upload_request)

    response = await client.post("/files/record-chunk", json={
        "file_id": upload_request["file_id"],
        "chunk_index": 1,
        "size": MIB,
        "storage_key": upload_request["storage_key"],
    })

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["error_type"] == "InvalidChunk"


async def test_record_chunk_unknown_file(client):
    response = await client.post("/files/record-chunk", json={
        "file_id": "missing",
        "chunk_index": 1,
        "size": MIB,
        "etag": '"abc"',
        "storage_key": "uploads/missing",
    })

    assert response.status_code == status.HTTP_404_NOT_FOUND


async def test_complete_upload_end_to_end(client, upload_request, storage, redis_client, session_factory):
    body = await begin_upload(client, upload_request)
    assert len(body["presignedUrls"]) == 3

    parts = await upload_all_parts(client, storage, upload_request, body)
    response = await client.post("/files/complete-upload", json={
        "uploadId": body["uploadId"],
        "parts": parts,
        "fileId": upload_request["file_id"],
    })

    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"success": True, "message": "File upload completed"}

    record = await load_record(session_factory, upload_request["file_id"])
    assert record.status == FileStatus.UPLOADED.value
    assert binding_key(body["uploadId"]) not in redis_client.data
    assert (TEST_BUCKET_NAME, upload_request["storage_key"]) in storage.objects
    async with session_factory() as db:
        assert await ChunkLedger(db).count(upload_request["file_id"]) == 3


async def test_complete_with_mismatched_tag_fails_upload(
    client, upload_request, storage, redis_client, session_factory
):
    body = await begin_upload(client, upload_request)
    parts = await upload_all_parts(client, storage, upload_request, body)
    parts[1]["ETag"] = '"0000"'

    response = await client.post("/files/complete-upload", json={
        "uploadId": body["uploadId"],
        "parts": parts,
        "fileId": upload_request["file_id"],
    })

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["error_type"] == "CompletionVerificationFailed"
    record = await load_record(session_factory, upload_request["file_id"])
    assert record.status == FileStatus.FAILED.value
    assert binding_key(body["uploadId"]) not in redis_client.data
    assert body["uploadId"] in storage.aborted


async def test_complete_with_missing_part_fails_upload(
    client, upload_request, storage, redis_client, session_factory
):
    body = await begin_upload(client, upload_request)
    parts = await upload_all_parts(client, storage, upload_request, body)

    response = await client.post("/files/complete-upload", json={
        "uploadId": body["uploadId"],
        "parts": parts[:2],
        "fileId": upload_request["file_id"],
    })

    assert response.status_code == status.HTTP_400_BAD_REQUEST
    assert response.json()["error_type"] == "CompletionVerificationFailed"
    record = await load_record(session_factory, upload_request["file_id"])
    assert record.status == FileStatus.FAILED.value
    assert body["uploadId"] in storage.aborted
    assert binding_key(body["uploadId"]) not in redis_client.data
    assert storage.objects == {}


async def test_complete_without_binding_changes_nothing(
    client, upload_request, storage, redis_client, session_factory
):
    body = await begin_upload(client, upload_request)
    parts = await upload_all_parts(client, storage, upload_request, body)
    redis_client.data.clear()

    response = await client.post("/files/complete-upload", json={
        "uploadId": body["uploadId"],
        "parts": parts,
        "fileId": upload_request["file_id"],
    })

    assert response.status_code == status.HTTP_404_NOT_FOUND
    assert response.json()["error_type"] == "SessionExpiredOrUnknown"
    record = await load_record(session_factory, upload_request["file_id"])
    assert record.status == FileStatus.UPLOADING.value
    assert body["uploadId"] in storage.uploads
    assert storage.aborted == []


async def test_complete_transient_failure_keeps_session(
    client, upload_request, storage, redis_client, session_factory
):
    body = await begin_upload(client, upload_request)
    parts = await upload_all_parts(client, storage, upload_request, body)
    storage.fail_complete = True

    response = await client.post("/files/complete-upload", json={
        "uploadId": body["uploadId"],
        "parts": parts,
        "fileId": upload_request["file_id"],
    })

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert response.json()["error_type"] == "StorageUnavailable"
    assert binding_key(body["uploadId"]) in redis_client.data
    record = await load_record(session_factory, upload_request["file_id"])
    assert record.status == FileStatus.UPLOADING.value

    storage.fail_complete = False
    retry = await client.post("/files/complete-upload", json={
        "uploadId": body["uploadId"],
        "parts": parts,
        "fileId": upload_request["file_id"],
    })
    assert retry.status_code == status.HTTP_200_OK


async def test_complete_after_backend_lost_upload(
    client, upload_request, storage, redis_client, session_factory
):
    body = await begin_upload(client, upload_request)
    parts = await upload_all_parts(client, storage, upload_request, body)
    del storage.uploads[body["uploadId"]]

    response = await client.post("/files/complete-upload", json={
        "uploadId": body["uploadId"],
        "parts": parts,
        "fileId": upload_request["file_id"],
    })

    assert response.status_code == status.HTTP_404_NOT_FOUND
    assert response.json()["error_type"] == "SessionExpiredOrUnknown"
    record = await load_record(session_factory, upload_request["file_id"])
    assert record.status == FileStatus.FAILED.value
    assert binding_key(body["uploadId"]) not in redis_client.data


async def test_get_file_status_reports_progress(client, upload_request, storage):
    body = await begin_upload(client, upload_request)
    etag = storage.upload_part(body["uploadId"], 1, b"first")
    await client.post("/files/record-chunk", json={
        "file_id": upload_request["file_id"],
        "chunk_index": 1,
        "size": 5 * MIB,
        "etag": etag,
        "storage_key": upload_request["storage_key"],
    })

    response = await client.get(f"/files/{upload_request['file_id']}")

    assert response.status_code == status.HTTP_200_OK
    data = response.json()["data"]
    assert data["status"] == "UPLOADING"
    assert data["chunks_recorded"] == 1
    assert data["chunks_expected"] == 3


async def test_get_file_status_unknown(client):
    response = await client.get("/files/missing")

    assert response.status_code == status.HTTP_404_NOT_FOUND
    assert response.json()["error_type"] == "NotFound"


async def test_delete_in_flight_upload(client, upload_request, storage, redis_client, session_factory):
    body = await begin_upload(client, upload_request)

    response = await client.delete(f"/files/{upload_request['file_id']}")

    assert response.status_code == status.HTTP_200_OK
    assert await load_record(session_factory, upload_request["file_id"]) is None
    assert body["uploadId"] in storage.aborted
    assert redis_client.data == {}


async def test_requests_without_token_are_rejected(client, upload_request, monkeypatch):
    monkeypatch.setattr(settings, "auth_enabled", True)
    app.dependency_overrides.pop(get_current_user)

    response = await client.post("/files/get-urls", json=upload_request)

    assert response.status_code == status.HTTP_401_UNAUTHORIZED
    assert response.json()["error_type"] == "Unauthorized"


async def test_requests_with_valid_token_are_accepted(client, upload_request, monkeypatch):
    monkeypatch.setattr(settings, "auth_enabled", True)
    monkeypatch.setattr(settings, "jwt_public_key", "test-secret")
    monkeypatch.setattr(settings, "jwt_algorithm", "HS256")
    app.dependency_overrides.pop(get_current_user)
    token = jwt.encode({"sub": "user-1"}, "test-secret", algorithm="HS256")

    response = await client.post(
        "/files/get-urls",
        json=upload_request,
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == status.HTTP_200_OK


async def test_requests_with_bad_token_are_rejected(client, upload_request, monkeypatch):
    monkeypatch.setattr(settings, "auth_enabled", True)
    monkeypatch.setattr(settings, "jwt_public_key", "test-secret")
    monkeypatch.setattr(settings, "jwt_algorithm", "HS256")
    app.dependency_overrides.pop(get_current_user)
    token = jwt.encode({"sub": "user-1"}, "other-secret", algorithm="HS256")

    response = await client.post(
        "/files/get-urls",
        json=upload_request,
        headers={"Authorization": f"Bearer {token}"},
    )

    assert response.status_code == status.HTTP_401_UNAUTHORIZED



async def test_cache_outage_during_get_urls_rolls_back(client, upload_request, session_cache, storage, session_factory):
    session_cache.store.redis_client = None

    response = await client.post("/files/get-urls", json=upload_request)

    assert response.status_code == status.HTTP_500_INTERNAL_SERVER_ERROR
    assert response.json()["error_type"] == "StorageUnavailable"
    assert await load_record(session_factory, upload_request["file_id"]) is None
    assert storage.uploads == {}
