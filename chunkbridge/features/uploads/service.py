"""上传编排服务

组合对象存储网关、会话缓存、文件记录和分片账本，实现分片上传会话的完整生命周期：

    INIT -> URLS_ISSUED -> PARTS_RECORDING -> COMPLETING -> UPLOADED | FAILED

服务本身不在进程内保存任何上传状态，会话状态只存在于Redis和数据库中，
因此任意实例都可以继续处理由其他实例发起的会话。
"""

import asyncio
from typing import Optional, Sequence

from fastapi import Depends
from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chunkbridge.core.config import Settings, settings
from chunkbridge.core.database import get_db
from chunkbridge.core.redis import CacheUnavailableError
from chunkbridge.features.storage.gateway import (
    GatewayFactory,
    ObjectStorageGateway,
    PartTagMismatchError,
    StorageGatewayError,
    UploadNotInitiatedError,
    get_gateway_factory,
)
from chunkbridge.shared.exceptions import (
    CompletionVerificationFailedError,
    ConflictError,
    DuplicateChunkError,
    InvalidChunkError,
    InvalidInputError,
    InvalidSizeError,
    NotFoundError,
    SessionExpiredError,
    StorageUnavailableError,
)

from .models import (
    CompleteUploadRequest,
    FileRecord,
    FileRecordRead,
    FileStatus,
    GetUrlsRequest,
    GetUrlsResponse,
    RecordChunkRequest,
    UploadedPart,
)
from .repository import ChunkLedger, DuplicateChunk, FileRecordExists, FileRecordStore
from .session_cache import SessionBinding, SessionCache, get_session_cache


def count_parts(file_size: int, chunk_size: int) -> int:
    """计算分片数量（向上取整）"""
    return (file_size + chunk_size - 1) // chunk_size


class UploadOrchestrator:
    """分片上传编排器

    每个请求创建一个实例
    """

    def __init__(
        self,
        db: AsyncSession,
        cache: SessionCache,
        gateways: GatewayFactory,
        config: Settings = settings
    ) -> None:
        self.db = db
        self.files = FileRecordStore(db)
        self.chunks = ChunkLedger(db)
        self.cache = cache
        self.gateways = gateways
        self.config = config

    async def begin_session(self, request: GetUrlsRequest) -> GetUrlsResponse:
        """发起分片上传会话

        校验大小 -> 初始化分片上传 -> 为每个分片签发URL -> 写入会话绑定 -> 创建文件记录。
        初始化之后的任何失败都会完整回滚，不会返回少于分片数的URL

        Args:
            request: 文件信息和目标存储键

        Returns:
            GetUrlsResponse: uploadId 与全部分片的预签名URL

        Raises:
            InvalidSizeError: 文件大小非正数或超过上限
            ConflictError: file_id 已存在
            StorageUnavailableError: 存储、缓存或数据库不可用
        """
        file_size = request.file_size
        if file_size <= 0:
            raise InvalidSizeError("文件大小必须为正数")
        if file_size > self.config.max_file_size:
            raise InvalidSizeError(
                f"文件大小超过上限 {self.config.max_file_size // (1024 * 1024)}MB"
            )

        try:
            existing = await self.files.get(request.file_id)
        except SQLAlchemyError as e:
            logger.error(f"查询文件记录失败: {request.file_id}: {e}")
            raise StorageUnavailableError("数据库暂不可用") from e
        if existing:
            raise ConflictError(f"文件已存在: {request.file_id}")

        num_parts = count_parts(file_size, self.config.chunk_size)
        gateway = self.gateways.for_object(self.gateways.bucket, request.storage_key)

        logger.info(f"发起分片上传: {request.file_id} ({file_size} bytes, {num_parts} 个分片)")

        try:
            upload_id = await gateway.initiate()
        except StorageGatewayError as e:
            logger.error(f"初始化分片上传失败: {request.file_id}: {e}")
            raise StorageUnavailableError("初始化分片上传失败") from e

        try:
            urls = await self._issue_part_urls(gateway, upload_id, num_parts)
            if len(urls) != num_parts:
                raise RuntimeError(f"URL数量不一致: 需要 {num_parts}，实际 {len(urls)}")

            await self.cache.bind(upload_id, SessionBinding(bucket=gateway.bucket, key=gateway.key))

            await self.files.create(FileRecord(
                file_id=request.file_id,
                file_name=request.file_name,
                mime_type=request.mime_type,
                size=file_size,
                storage_key=request.storage_key,
                owner_id=request.user_id,
                status=FileStatus.UPLOADING.value,
                upload_id=upload_id,
            ))
        except FileRecordExists as e:
            # 并发请求已写入同名记录，不能删除别人的记录
            await self.cleanup_failed_upload(request.file_id, upload_id, gateway, delete_record=False)
            raise ConflictError(f"文件已存在: {request.file_id}") from e
        except Exception as e:
            logger.error(f"发起分片上传失败，开始清理: {request.file_id} ({upload_id}): {e}")
            await self.cleanup_failed_upload(request.file_id, upload_id, gateway)
            raise StorageUnavailableError("生成分片上传URL失败") from e

        logger.info(f"分片上传URL已生成: {request.file_id} ({upload_id})，共 {len(urls)} 个")
        return GetUrlsResponse(presigned_urls=urls, upload_id=upload_id)

    async def _issue_part_urls(
        self,
        gateway: ObjectStorageGateway,
        upload_id: str,
        num_parts: int
    ) -> list[str]:
        semaphore = asyncio.Semaphore(self.config.presign_concurrency)

        async def issue(part_number: int) -> str:
            async with semaphore:
                return await gateway.part_upload_credential(part_number, upload_id)

        return list(await asyncio.gather(*(issue(n) for n in range(1, num_parts + 1))))

    async def record_chunk(self, request: RecordChunkRequest) -> None:
        """记录客户端上报的已上传分片

        只做本地记账，不向存储端校验标签

        Raises:
            NotFoundError: 文件记录不存在
            InvalidChunkError: 分片序号越界、存储键不匹配或上传已结束
            DuplicateChunkError: 该分片已记录（客户端可视为成功继续）
            StorageUnavailableError: 数据库写入失败
        """
        try:
            record = await self.files.get(request.file_id)
        except SQLAlchemyError as e:
            logger.error(f"查询文件记录失败: {request.file_id}: {e}")
            raise StorageUnavailableError("数据库暂不可用") from e

        if not record:
            raise NotFoundError(f"文件记录不存在: {request.file_id}")
        if record.storage_key != request.storage_key:
            raise InvalidChunkError("存储键与文件记录不一致")
        if record.status in (FileStatus.UPLOADED.value, FileStatus.FAILED.value):
            raise InvalidChunkError(f"文件上传已结束，不再接受分片: {record.status}")

        expected = count_parts(record.size, self.config.chunk_size) if record.size else None
        if request.chunk_index < 1 or (expected is not None and request.chunk_index > expected):
            raise InvalidChunkError(f"分片序号超出范围: {request.chunk_index}（共 {expected} 个分片）")

        try:
            await self.chunks.record(
                request.file_id,
                request.chunk_index,
                request.size,
                request.etag,
                request.storage_key,
            )
        except DuplicateChunk as e:
            logger.info(f"分片重复上报: {request.file_id} #{request.chunk_index}")
            raise DuplicateChunkError(f"分片 {request.chunk_index} 已记录") from e
        except SQLAlchemyError as e:
            logger.error(f"记录分片失败: {request.file_id} #{request.chunk_index}: {e}")
            raise StorageUnavailableError("记录分片失败") from e

    async def complete_upload(self, request: CompleteUploadRequest) -> None:
        """完成分片上传

        会话绑定不存在时直接返回404，不改动任何状态。
        分片清单不完整或存储端校验失败时中止上传、移除绑定并将文件标记为FAILED，
        客户端需要从头重新上传

        Raises:
            SessionExpiredError: 会话绑定不存在或已过期，或存储端已无此上传
            NotFoundError: 文件记录不存在
            InvalidInputError: uploadId 与文件记录不对应
            CompletionVerificationFailedError: 分片校验失败
            StorageUnavailableError: 存储端或缓存暂不可用，可重试
        """
        upload_id = request.upload_id
        file_id = request.file_id

        try:
            binding = await self.cache.lookup(upload_id)
        except CacheUnavailableError as e:
            raise StorageUnavailableError("会话缓存暂不可用") from e

        if binding is None:
            logger.warning(f"上传会话不存在或已过期: {upload_id} (file {file_id})")
            raise SessionExpiredError()

        try:
            record = await self.files.get(file_id)
        except SQLAlchemyError as e:
            logger.error(f"查询文件记录失败: {file_id}: {e}")
            raise StorageUnavailableError("数据库暂不可用") from e

        if not record:
            raise NotFoundError(f"文件记录不存在: {file_id}")
        if record.storage_key != binding.key:
            raise InvalidInputError("uploadId 与文件记录不对应")

        gateway = self.gateways.for_object(binding.bucket, binding.key)

        problem = self._check_manifest(request.parts, record.size)
        if problem:
            logger.warning(f"分片清单校验失败: {file_id} ({upload_id}): {problem}")
            await self._fail_completion(file_id, upload_id, gateway)
            raise CompletionVerificationFailedError(f"分片校验失败: {problem}")

        try:
            await gateway.complete(upload_id, request.parts)
        except PartTagMismatchError as e:
            logger.warning(f"存储端分片标签校验失败: {file_id} ({upload_id}): {e}")
            await self._fail_completion(file_id, upload_id, gateway)
            raise CompletionVerificationFailedError() from e
        except UploadNotInitiatedError as e:
            logger.warning(f"存储端已无此分片上传: {upload_id}")
            await self._release_binding(upload_id)
            await self._mark_failed(file_id)
            raise SessionExpiredError() from e
        except StorageGatewayError as e:
            # 暂时性错误保留会话，客户端可以重试完成操作
            logger.error(f"完成分片上传失败: {file_id} ({upload_id}): {e}")
            raise StorageUnavailableError("完成分片上传失败") from e

        try:
            await self.files.set_status(file_id, FileStatus.UPLOADED)
        except SQLAlchemyError as e:
            # 对象已在存储端生成，状态由完成事件对账补齐
            logger.error(f"更新文件状态失败，等待事件对账: {file_id}: {e}")

        await self._release_binding(upload_id)
        logger.info(f"文件上传完成: {file_id} ({upload_id})")

    def _check_manifest(self, parts: Sequence[UploadedPart], size: Optional[int]) -> Optional[str]:
        numbers = [part.part_number for part in parts]
        if len(set(numbers)) != len(numbers):
            return "分片序号重复"
        if size:
            expected = count_parts(size, self.config.chunk_size)
            if sorted(numbers) != list(range(1, expected + 1)):
                return f"需要 {expected} 个分片，实际提交 {len(numbers)} 个"
        return None

    async def _fail_completion(
        self,
        file_id: str,
        upload_id: str,
        gateway: ObjectStorageGateway
    ) -> None:
        await self._abort(upload_id, gateway)
        await self._release_binding(upload_id)
        await self._mark_failed(file_id)

    async def cleanup_failed_upload(
        self,
        file_id: str,
        upload_id: Optional[str],
        gateway: ObjectStorageGateway,
        delete_record: bool = True
    ) -> None:
        """清理失败的上传

        删除文件记录和分片记录；delete_record 为 False 时记录属于其他请求，两者都保留。
        已初始化分片上传时中止上传并移除会话绑定。
        尽力而为：每一步失败只记录日志，不覆盖触发清理的原始错误
        """
        try:
            await self.db.rollback()
        except SQLAlchemyError as e:
            logger.error(f"清理前回滚数据库会话失败: {e}")

        if delete_record:
            try:
                await self.chunks.delete_for_file(file_id)
                await self.files.delete(file_id)
            except SQLAlchemyError as e:
                logger.error(f"清理文件记录失败: {file_id}: {e}")

        if upload_id:
            await self._abort(upload_id, gateway)
            await self._release_binding(upload_id)

    async def _abort(self, upload_id: str, gateway: ObjectStorageGateway) -> None:
        try:
            await gateway.abort(upload_id)
        except StorageGatewayError as e:
            logger.error(f"中止分片上传失败: {upload_id}: {e}")

    async def _release_binding(self, upload_id: str) -> None:
        try:
            await self.cache.release(upload_id)
        except CacheUnavailableError as e:
            logger.error(f"移除上传会话绑定失败: {upload_id}: {e}")

    async def _mark_failed(self, file_id: str) -> None:
        try:
            await self.files.set_status(file_id, FileStatus.FAILED)
        except SQLAlchemyError as e:
            logger.error(f"标记文件失败状态失败: {file_id}: {e}")

    async def get_file_status(self, file_id: str) -> FileRecordRead:
        """获取文件记录及分片进度

        Raises:
            NotFoundError: 文件记录不存在
        """
        record = await self.files.get(file_id)
        if not record:
            raise NotFoundError(f"文件记录不存在: {file_id}")

        status = FileRecordRead.model_validate(record)
        status.chunks_recorded = await self.chunks.count(file_id)
        if record.size:
            status.chunks_expected = count_parts(record.size, self.config.chunk_size)
        return status

    async def delete_file(self, file_id: str) -> None:
        """删除文件记录

        仍在上传中的文件会先中止存储端的分片上传并移除会话绑定

        Raises:
            NotFoundError: 文件记录不存在
        """
        record = await self.files.get(file_id)
        if not record:
            raise NotFoundError(f"文件记录不存在: {file_id}")

        upload_id = record.upload_id
        in_flight = record.status in (FileStatus.PENDING.value, FileStatus.UPLOADING.value)
        gateway = self.gateways.for_object(self.gateways.bucket, record.storage_key)

        await self.chunks.delete_for_file(file_id)
        await self.files.delete(file_id)

        if upload_id and in_flight:
            await self._abort(upload_id, gateway)
            await self._release_binding(upload_id)

        logger.info(f"文件已删除: {file_id}")


async def get_upload_orchestrator(
    db: AsyncSession = Depends(get_db),
    cache: SessionCache = Depends(get_session_cache),
    gateways: GatewayFactory = Depends(get_gateway_factory),
) -> UploadOrchestrator:
    """FastAPI依赖注入：获取上传编排器"""
    return UploadOrchestrator(db, cache, gateways)
