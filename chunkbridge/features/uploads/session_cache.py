"""上传会话缓存

在Redis中保存 uploadId -> (bucket, key) 的绑定，任何无状态实例都能据此继续处理同一会话。
绑定的过期时间就是被放弃上传的超时机制。
"""

from dataclasses import dataclass
from typing import Optional

from loguru import logger

from chunkbridge.core.config import settings
from chunkbridge.core.redis import RedisManager, redis_manager


NAMESPACE = "upload-session"


@dataclass(frozen=True)
class SessionBinding:
    bucket: str
    key: str


class SessionCache:
    """上传会话绑定的读写

    Redis不可用时抛出 CacheUnavailableError，由调用方决定如何处理
    """

    def __init__(self, store: RedisManager, ttl: int) -> None:
        self.store = store
        self.ttl = ttl

    def _key(self, upload_id: str) -> str:
        return RedisManager.build_key(NAMESPACE, upload_id)

    async def bind(self, upload_id: str, binding: SessionBinding) -> None:
        await self.store.set(
            self._key(upload_id),
            {"bucket": binding.bucket, "key": binding.key},
            ttl=self.ttl,
        )
        logger.debug(f"上传会话已绑定: {upload_id} -> {binding.bucket}/{binding.key}")

    async def lookup(self, upload_id: str) -> Optional[SessionBinding]:
        """查询会话绑定

        Returns:
            Optional[SessionBinding]: 绑定，不存在或已过期返回None
        """
        value = await self.store.get(self._key(upload_id))
        if not isinstance(value, dict) or "bucket" not in value or "key" not in value:
            if value is not None:
                logger.warning(f"上传会话绑定格式错误，视为不存在: {upload_id}")
            return None
        return SessionBinding(bucket=value["bucket"], key=value["key"])

    async def release(self, upload_id: str) -> None:
        if await self.store.delete(self._key(upload_id)):
            logger.debug(f"上传会话绑定已移除: {upload_id}")


def get_session_cache() -> SessionCache:
    """FastAPI依赖注入：获取会话缓存"""
    return SessionCache(redis_manager, settings.session_ttl)
