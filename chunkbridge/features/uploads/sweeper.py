"""过期上传清理任务

定期查找超过会话有效期仍停留在 PENDING/UPLOADING 的文件记录，
中止其分片上传、移除会话绑定、删除分片记录并标记为 FAILED
"""

import asyncio
from datetime import datetime, timedelta
from typing import Callable, Optional

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chunkbridge.core.config import Settings, settings
from chunkbridge.core.redis import CacheUnavailableError
from chunkbridge.features.storage.gateway import GatewayFactory, StorageGatewayError

from .models import FileStatus
from .repository import ChunkLedger, FileRecordStore
from .session_cache import SessionCache


class StaleUploadSweeper:
    """过期上传清理器"""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession],
        cache: SessionCache,
        gateways: GatewayFactory,
        config: Settings = settings
    ) -> None:
        self.session_factory = session_factory
        self.cache = cache
        self.gateways = gateways
        self.max_age = timedelta(seconds=config.session_ttl)
        self.interval = config.sweep_interval_seconds
        self._stopping = asyncio.Event()

    async def sweep_once(self, now: Optional[datetime] = None) -> int:
        """执行一轮清理

        Returns:
            int: 本轮标记为 FAILED 的文件数
        """
        older_than = (now or datetime.utcnow()) - self.max_age
        swept = 0

        async with self.session_factory() as db:
            files = FileRecordStore(db)
            chunks = ChunkLedger(db)

            stale = [
                (record.file_id, record.upload_id, record.storage_key)
                for record in await files.list_stale(older_than)
            ]
            if stale:
                logger.info(f"发现 {len(stale)} 个过期上传")

            for file_id, upload_id, storage_key in stale:
                if upload_id:
                    await self._release_upload(upload_id, storage_key)
                try:
                    await chunks.delete_for_file(file_id)
                    await files.set_status(file_id, FileStatus.FAILED)
                    swept += 1
                except SQLAlchemyError as e:
                    await db.rollback()
                    logger.error(f"清理过期上传失败: {file_id}: {e}")

        return swept

    async def _release_upload(self, upload_id: str, storage_key: str) -> None:
        gateway = self.gateways.for_object(self.gateways.bucket, storage_key)
        try:
            await gateway.abort(upload_id)
        except StorageGatewayError as e:
            logger.error(f"中止过期分片上传失败: {upload_id}: {e}")
        try:
            await self.cache.release(upload_id)
        except CacheUnavailableError as e:
            logger.error(f"移除过期会话绑定失败: {upload_id}: {e}")

    async def run(self) -> None:
        """定期执行清理，直到 stop() 被调用或任务被取消"""
        logger.info(f"过期上传清理任务已启动，间隔 {self.interval} 秒")
        while not self._stopping.is_set():
            try:
                swept = await self.sweep_once()
                if swept:
                    logger.info(f"已清理 {swept} 个过期上传")
            except Exception as e:
                logger.error(f"过期上传清理出错: {type(e).__name__}: {e}")

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stopping.set()
