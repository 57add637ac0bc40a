"""数据库连接模块

提供SQLAlchemy异步数据库连接和会话管理
"""

import asyncio
from typing import AsyncGenerator, Optional

from alembic import command
from alembic.config import Config
from loguru import logger
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlmodel import SQLModel

from .config import settings


class DatabaseManager:
    """数据库管理器

    管理异步数据库引擎和会话工厂
    """

    def __init__(self, database_url: Optional[str]) -> None:
        """初始化数据库管理器

        创建异步引擎和会话工厂；未配置数据库URL时跳过初始化

        Args:
            database_url: 异步数据库连接URL
        """
        self.engine: Optional[AsyncEngine] = None
        self.async_session: Optional[async_sessionmaker[AsyncSession]] = None

        if not database_url:
            logger.warning("数据库URL未配置，跳过数据库初始化")
            return

        self.engine = create_async_engine(
            database_url,
            echo=settings.debug,  # 调试模式下打印SQL语句
            pool_size=10,
            max_overflow=20,
            pool_pre_ping=True,
            pool_recycle=3600,
        )

        self.async_session = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=True,
        )

        logger.info(f"数据库引擎已初始化: {database_url.split('@')[1] if '@' in database_url else 'localhost'}")

    async def run_migrations(self) -> None:
        """运行数据库迁移

        使用 Alembic 将数据库升级到最新版本
        """
        try:
            # Alembic 是同步的，放到执行器中运行
            await asyncio.get_running_loop().run_in_executor(
                None, self._run_alembic_upgrade
            )
            logger.info("数据库迁移完成")
        except Exception as e:
            logger.error(f"数据库迁移失败: {e}")
            raise

    def _run_alembic_upgrade(self) -> None:
        alembic_cfg = Config("alembic.ini")
        command.upgrade(alembic_cfg, "head")

    async def create_tables_fallback(self) -> None:
        """备用的表创建方法

        仅在 Alembic 迁移失败且处于调试模式时使用
        """
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)
            logger.warning("使用备用方法创建数据库表（不推荐用于生产环境）")
        except Exception as e:
            logger.error(f"备用表创建方法失败: {e}")
            raise

    async def close(self) -> None:
        """关闭数据库连接"""
        if self.engine:
            await self.engine.dispose()
            logger.info("数据库连接已关闭")

    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """获取数据库会话

        自动管理会话生命周期，出错时回滚

        Yields:
            AsyncSession: 数据库会话
        """
        if not self.async_session:
            raise RuntimeError("数据库未配置")

        async with self.async_session() as session:
            try:
                yield session
            except Exception as e:
                await session.rollback()
                logger.error(f"数据库会话错误: {e}")
                raise


# 全局数据库管理器实例
db_manager = DatabaseManager(settings.async_database_url)


# FastAPI依赖注入函数
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """获取数据库会话的依赖注入函数

    在FastAPI路由中使用: db: AsyncSession = Depends(get_db)

    Yields:
        AsyncSession: 数据库会话
    """
    async for session in db_manager.get_session():
        yield session
