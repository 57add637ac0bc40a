"""测试夹具

使用临时SQLite数据库、内存Redis客户端和内存对象存储替换外部依赖
"""

import hashlib
import itertools
from typing import Optional, Sequence

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from chunkbridge.core.config import MIB, settings
from chunkbridge.core.database import get_db
from chunkbridge.core.redis import RedisManager
from chunkbridge.core.security import get_current_user
from chunkbridge.features.notifications.queue import QueueMessage
from chunkbridge.features.storage.gateway import (
    CompletedPart,
    PartTagMismatchError,
    StorageBackendUnavailableError,
    UploadNotInitiatedError,
    get_gateway_factory,
)
from chunkbridge.features.uploads.models import Chunk, FileRecord  # noqa: F401
from chunkbridge.features.uploads.session_cache import SessionCache, get_session_cache
from chunkbridge.main import app


TEST_BUCKET = "test-bucket"


class InMemoryRedisClient:
    """只实现 RedisManager 用到的命令"""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}

    async def get(self, key: str) -> Optional[str]:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> None:
        self.data[key] = value

    async def setex(self, key: str, ttl: int, value: str) -> None:
        self.data[key] = value
        self.ttls[key] = ttl

    async def delete(self, key: str) -> int:
        self.ttls.pop(key, None)
        return 1 if self.data.pop(key, None) is not None else 0

    async def ping(self) -> bool:
        return True

    async def aclose(self) -> None:
        pass


class InMemoryStorageBackend:
    """模拟S3分片上传语义的内存存储"""

    def __init__(self) -> None:
        self.uploads: dict[str, dict] = {}
        self.objects: dict[tuple[str, str], int] = {}
        self.aborted: list[str] = []
        self._ids = itertools.count(1)
        self.fail_initiate = False
        self.fail_presign_part: Optional[int] = None
        self.fail_complete = False

    def upload_part(self, upload_id: str, part_number: int, data: bytes) -> str:
        """模拟客户端通过预签名URL上传分片，返回ETag"""
        etag = f'"{hashlib.md5(data).hexdigest()}"'
        self.uploads[upload_id]["parts"][part_number] = (etag, len(data))
        return etag


class InMemoryGateway:
    def __init__(self, backend: InMemoryStorageBackend, bucket: str, key: str) -> None:
        self.backend = backend
        self.bucket = bucket
        self.key = key

    async def initiate(self) -> str:
        if self.backend.fail_initiate:
            raise StorageBackendUnavailableError("initiate failed")
        upload_id = f"upload-{next(self.backend._ids)}"
        self.backend.uploads[upload_id] = {"bucket": self.bucket, "key": self.key, "parts": {}}
        return upload_id

    async def part_upload_credential(self, part_number: int, upload_id: str) -> str:
        if not upload_id:
            raise UploadNotInitiatedError("no upload")
        if part_number == self.backend.fail_presign_part:
            raise StorageBackendUnavailableError("presign failed")
        return f"https://{self.bucket}.s3.test/{self.key}?uploadId={upload_id}&partNumber={part_number}"

    async def complete(self, upload_id: str, parts: Sequence[CompletedPart]) -> None:
        if self.backend.fail_complete:
            raise StorageBackendUnavailableError("complete failed")
        upload = self.backend.uploads.get(upload_id)
        if upload is None:
            raise UploadNotInitiatedError(upload_id)
        total = 0
        for part in parts:
            stored = upload["parts"].get(part.part_number)
            if stored is None or stored[0] != part.etag:
                raise PartTagMismatchError(f"InvalidPart: {part.part_number}")
            total += stored[1]
        del self.backend.uploads[upload_id]
        self.backend.objects[(self.bucket, self.key)] = total

    async def abort(self, upload_id: str) -> None:
        if self.backend.uploads.pop(upload_id, None) is not None:
            self.backend.aborted.append(upload_id)


class InMemoryGatewayFactory:
    def __init__(self, backend: InMemoryStorageBackend, bucket: str = TEST_BUCKET) -> None:
        self.backend = backend
        self.bucket = bucket

    def for_object(self, bucket: str, key: str) -> InMemoryGateway:
        return InMemoryGateway(self.backend, bucket, key)


class InMemoryQueue:
    def __init__(self, messages: Optional[list[QueueMessage]] = None) -> None:
        self.pending = list(messages or [])
        self.deleted: list[str] = []
        self.accessible = True

    async def receive(self) -> list[QueueMessage]:
        batch, self.pending = self.pending[:5], self.pending[5:]
        return batch

    async def delete(self, receipt_handle: str) -> None:
        self.deleted.append(receipt_handle)

    async def check_access(self) -> bool:
        return self.accessible


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def redis_client():
    return InMemoryRedisClient()


@pytest.fixture
def session_cache(redis_client):
    store = RedisManager(None)
    store.redis_client = redis_client
    return SessionCache(store, settings.session_ttl)


@pytest.fixture
def storage():
    return InMemoryStorageBackend()


@pytest.fixture
def gateways(storage):
    return InMemoryGatewayFactory(storage)


@pytest.fixture
async def client(session_factory, session_cache, gateways):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_cache] = lambda: session_cache
    app.dependency_overrides[get_gateway_factory] = lambda: gateways
    app.dependency_overrides[get_current_user] = lambda: "user-1"

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def upload_request():
    """12 MiB 文件，按 5 MiB 分片共 3 个分片"""
    return {
        "file_id": "file-1",
        "file_name": "report.pdf",
        "mime_type": "application/pdf",
        "file_size": 12 * MIB,
        "user_id": "user-1",
        "storage_key": "uploads/user-1/report.pdf",
    }
