"""Redis连接模块

提供Redis异步连接池和带过期时间的键值操作

与普通缓存不同，这里保存的是上传会话绑定，读写失败必须让调用方感知，
因此所有操作在出错时抛出 CacheUnavailableError 而不是静默返回
"""

import json
from datetime import datetime
from typing import Any, Optional

import redis.asyncio as redis
from loguru import logger
from redis.exceptions import RedisError

from .config import settings


KEY_PREFIX = "chunkbridge"


class CacheUnavailableError(Exception):
    """Redis未配置或不可用"""


class RedisManager:
    """Redis管理器

    管理Redis连接池和提供键值操作方法
    """

    def __init__(self, redis_url: Optional[str]) -> None:
        """初始化Redis管理器

        如果Redis URL未配置，则跳过初始化，后续操作会抛出 CacheUnavailableError

        Args:
            redis_url: Redis连接URL
        """
        self.redis_pool = None
        self.redis_client = None

        if not redis_url:
            logger.warning("Redis URL未配置，跳过Redis初始化")
            return

        self.redis_pool = redis.ConnectionPool.from_url(
            redis_url,
            max_connections=20,
            retry_on_timeout=True,
            socket_keepalive=True,
            health_check_interval=30,
            decode_responses=True,
        )

        self.redis_client = redis.Redis(connection_pool=self.redis_pool)

        logger.info("Redis连接池已初始化")

    async def ping(self) -> bool:
        """检查Redis连接状态

        Returns:
            bool: 连接是否正常
        """
        if not self.redis_client:
            logger.warning("Redis未初始化，无法检查连接")
            return False

        try:
            await self.redis_client.ping()
            return True
        except RedisError as e:
            logger.error(f"Redis连接检查失败: {e}")
            return False

    async def close(self) -> None:
        """关闭Redis连接"""
        if self.redis_client:
            await self.redis_client.aclose()
            logger.info("Redis连接已关闭")
        else:
            logger.info("Redis未初始化，无需关闭")

    @staticmethod
    def build_key(namespace: str, *parts: Any) -> str:
        """构建键名

        格式: chunkbridge:namespace:part1:part2

        Args:
            namespace: 命名空间
            *parts: 键的组成部分

        Returns:
            str: 键名
        """
        return ":".join([KEY_PREFIX, namespace, *(str(part) for part in parts)])

    def _serialize_value(self, value: Any) -> str:
        def json_serializer(obj: Any) -> str:
            if isinstance(obj, datetime):
                return obj.isoformat()
            raise TypeError(f"Object of type {type(obj)} is not JSON serializable")

        return json.dumps(value, default=json_serializer, ensure_ascii=False)

    def _deserialize_value(self, value: str) -> Any:
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return value

    def _require_client(self) -> redis.Redis:
        if not self.redis_client:
            raise CacheUnavailableError("Redis未配置")
        return self.redis_client

    async def get(self, key: str) -> Optional[Any]:
        """获取值

        Args:
            key: 键名

        Returns:
            Optional[Any]: 值，不存在返回None

        Raises:
            CacheUnavailableError: Redis不可用
        """
        client = self._require_client()
        try:
            value = await client.get(key)
        except RedisError as e:
            logger.error(f"Redis读取失败 {key}: {e}")
            raise CacheUnavailableError(str(e)) from e

        if value is None:
            return None
        return self._deserialize_value(value)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """设置值

        Args:
            key: 键名
            value: 值，会被序列化为JSON
            ttl: 过期时间（秒），None表示不过期

        Raises:
            CacheUnavailableError: Redis不可用
        """
        client = self._require_client()
        serialized_value = self._serialize_value(value)
        try:
            if ttl:
                await client.setex(key, ttl, serialized_value)
            else:
                await client.set(key, serialized_value)
        except RedisError as e:
            logger.error(f"Redis写入失败 {key}: {e}")
            raise CacheUnavailableError(str(e)) from e

    async def delete(self, key: str) -> bool:
        """删除键

        Args:
            key: 键名

        Returns:
            bool: 键是否存在并被删除

        Raises:
            CacheUnavailableError: Redis不可用
        """
        client = self._require_client()
        try:
            result = await client.delete(key)
        except RedisError as e:
            logger.error(f"Redis删除失败 {key}: {e}")
            raise CacheUnavailableError(str(e)) from e
        return result > 0


# 全局Redis管理器实例
redis_manager = RedisManager(settings.async_redis_url)
