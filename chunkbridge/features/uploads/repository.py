"""文件记录与分片账本

在关系数据库中持久化文件记录和分片记录。
分片表上的 (file_id, chunk_index) 唯一约束是并发上报同一分片时唯一的保护机制。
"""

from datetime import datetime
from typing import Optional, Sequence

from loguru import logger
from sqlalchemy import delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlmodel import col, select

from .models import Chunk, ChunkStatus, FileRecord, FileStatus


class DuplicateChunk(Exception):
    """分片已存在"""


class FileRecordExists(Exception):
    """同一file_id或storage_key的文件记录已存在"""


class FileRecordStore:
    """文件记录存储"""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def create(self, record: FileRecord) -> FileRecord:
        """创建文件记录

        Raises:
            FileRecordExists: file_id或storage_key冲突
        """
        self.db.add(record)
        try:
            await self.db.commit()
        except IntegrityError as e:
            await self.db.rollback()
            raise FileRecordExists(record.file_id) from e
        await self.db.refresh(record)

        logger.info(f"文件记录已创建: {record.file_id} ({record.status})")
        return record

    async def get(self, file_id: str) -> Optional[FileRecord]:
        statement = select(FileRecord).where(FileRecord.file_id == file_id)
        result = await self.db.execute(statement)
        return result.scalar_one_or_none()

    async def get_by_storage_key(self, storage_key: str) -> Optional[FileRecord]:
        statement = select(FileRecord).where(FileRecord.storage_key == storage_key)
        result = await self.db.execute(statement)
        return result.scalar_one_or_none()

    async def set_status(
        self,
        file_id: str,
        status: FileStatus,
        size: Optional[int] = None
    ) -> Optional[FileRecord]:
        """更新文件状态

        Args:
            file_id: 文件ID
            status: 新状态
            size: 存储端确认的文件大小，为None时不修改

        Returns:
            Optional[FileRecord]: 更新后的记录，不存在返回None
        """
        record = await self.get(file_id)
        if not record:
            return None
        return await self._apply_status(record, status, size)

    async def mark_uploaded_by_key(
        self,
        storage_key: str,
        size: Optional[int] = None
    ) -> Optional[FileRecord]:
        """按存储键将文件标记为已上传

        幂等：状态和大小都已一致时不写库

        Returns:
            Optional[FileRecord]: 更新后的记录，不存在返回None
        """
        record = await self.get_by_storage_key(storage_key)
        if not record:
            return None

        if record.status == FileStatus.UPLOADED and (size is None or record.size == size):
            logger.debug(f"文件已是UPLOADED状态，跳过: {record.file_id}")
            return record

        return await self._apply_status(record, FileStatus.UPLOADED, size)

    async def _apply_status(
        self,
        record: FileRecord,
        status: FileStatus,
        size: Optional[int]
    ) -> FileRecord:
        previous = record.status
        record.status = status.value
        if size is not None:
            record.size = size
        record.updated_at = datetime.utcnow()

        await self.db.commit()
        await self.db.refresh(record)

        logger.info(f"文件状态已更新: {record.file_id} {previous} -> {record.status}")
        return record

    async def delete(self, file_id: str) -> bool:
        """删除文件记录

        Returns:
            bool: 记录是否存在
        """
        result = await self.db.execute(delete(FileRecord).where(FileRecord.file_id == file_id))
        await self.db.commit()

        deleted = result.rowcount > 0
        if deleted:
            logger.info(f"文件记录已删除: {file_id}")
        return deleted

    async def list_stale(self, older_than: datetime, limit: int = 100) -> Sequence[FileRecord]:
        """查询长时间停留在 PENDING/UPLOADING 的文件记录"""
        statement = (
            select(FileRecord)
            .where(col(FileRecord.status).in_([FileStatus.PENDING.value, FileStatus.UPLOADING.value]))
            .where(func.coalesce(FileRecord.updated_at, FileRecord.created_at) < older_than)
            .limit(limit)
        )
        result = await self.db.execute(statement)
        return result.scalars().all()


class ChunkLedger:
    """分片账本

    记录客户端上报的每个分片，用于进度展示和审计；
    最终对象的正确性由存储端完成上传时的校验保证
    """

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def record(
        self,
        file_id: str,
        chunk_index: int,
        size: int,
        checksum: str,
        storage_key: str
    ) -> Chunk:
        """写入一条已完成的分片记录

        Raises:
            DuplicateChunk: 该分片序号已记录
            SQLAlchemyError: 其他写入失败
        """
        chunk = Chunk(
            file_id=file_id,
            chunk_index=chunk_index,
            size=size,
            checksum=checksum,
            storage_key=storage_key,
            status=ChunkStatus.COMPLETED.value,
        )
        self.db.add(chunk)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            # 唯一约束冲突与其他完整性错误（如外键）需要区分开
            if await self.get(file_id, chunk_index) is not None:
                raise DuplicateChunk(f"{file_id}#{chunk_index}")
            raise
        await self.db.refresh(chunk)

        logger.info(f"分片已记录: {file_id} #{chunk_index} ({size} bytes)")
        return chunk

    async def get(self, file_id: str, chunk_index: int) -> Optional[Chunk]:
        statement = select(Chunk).where(Chunk.file_id == file_id, Chunk.chunk_index == chunk_index)
        result = await self.db.execute(statement)
        return result.scalar_one_or_none()

    async def count(self, file_id: str) -> int:
        statement = select(func.count()).select_from(Chunk).where(Chunk.file_id == file_id)
        result = await self.db.execute(statement)
        return result.scalar_one()

    async def delete_for_file(self, file_id: str) -> int:
        """删除文件的全部分片记录

        Returns:
            int: 删除的记录数
        """
        result = await self.db.execute(delete(Chunk).where(Chunk.file_id == file_id))
        await self.db.commit()

        if result.rowcount:
            logger.info(f"已删除 {result.rowcount} 条分片记录: {file_id}")
        return result.rowcount
