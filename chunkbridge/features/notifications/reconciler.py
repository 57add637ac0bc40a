"""完成事件对账

长轮询存储事件通知队列，对象在存储端生成后将对应文件记录标记为 UPLOADED。
客户端没有调用完成接口（例如页面关闭）时，文件状态也能最终一致。
"""

import asyncio
from typing import Callable, Optional, Protocol

from loguru import logger
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from chunkbridge.core.config import Settings, settings
from chunkbridge.features.uploads.repository import FileRecordStore

from .parser import (
    NotificationParseError,
    S3RecordsNotification,
    StorageObjectEvent,
    TestNotification,
    parse_notification,
)
from .queue import QueueMessage, QueueUnavailableError, get_notification_queue


class NotificationQueue(Protocol):
    async def receive(self) -> list[QueueMessage]: ...

    async def delete(self, receipt_handle: str) -> None: ...

    async def check_access(self) -> bool: ...


class CompletionReconciler:
    """存储事件对账任务

    每个进程运行一个实例；对同一事件重复处理结果相同
    """

    def __init__(
        self,
        queue: NotificationQueue,
        session_factory: Callable[[], AsyncSession],
        config: Settings = settings
    ) -> None:
        self.queue = queue
        self.session_factory = session_factory
        self.backoff_seconds = config.reconciler_backoff_seconds
        self._stopping = asyncio.Event()
        self.running = False

    async def handle_message(self, message: QueueMessage) -> bool:
        """处理单条消息

        Returns:
            bool: 是否应确认（删除）该消息；False 表示留在队列中等待重新投递
        """
        try:
            notification = parse_notification(message.body)
        except NotificationParseError as e:
            logger.warning(f"无法解析SQS消息，直接确认: {message.message_id}: {e}")
            return True

        if isinstance(notification, TestNotification):
            logger.info(f"收到S3测试事件，通知链路正常: bucket={notification.bucket}")
            return True

        if not isinstance(notification, S3RecordsNotification) or not notification.events:
            logger.warning(f"SQS消息不包含对象事件，直接确认: {message.message_id}")
            return True

        logger.info(f"消息 {message.message_id} 包含 {len(notification.events)} 条对象事件")

        for event in notification.events:
            if not await self.apply_event(event, message.message_id):
                return False
        return True

    async def apply_event(self, event: StorageObjectEvent, message_id: str = "") -> bool:
        """将对象创建事件应用到文件记录

        Returns:
            bool: 处理是否成功（记录不存在也算成功）
        """
        if not event.is_creation:
            logger.debug(f"忽略非创建事件: {event.event_name} {event.key}")
            return True

        try:
            async with self.session_factory() as db:
                record = await FileRecordStore(db).mark_uploaded_by_key(event.key, event.size)
        except SQLAlchemyError as e:
            logger.error(f"对账更新文件状态失败: {event.key} (message {message_id}): {e}")
            return False

        if record is None:
            logger.warning(f"存储键没有对应的文件记录: {event.key} (message {message_id})")
        return True

    async def poll_once(self) -> bool:
        """拉取并处理一批消息

        Returns:
            bool: 本批消息是否全部处理成功

        Raises:
            QueueUnavailableError: 拉取失败
        """
        messages = await self.queue.receive()
        if not messages:
            logger.debug("SQS没有新消息")
            return True

        logger.info(f"收到 {len(messages)} 条SQS消息")

        all_acked = True
        for message in messages:
            if not await self.handle_message(message):
                all_acked = False
                continue
            try:
                await self.queue.delete(message.receipt_handle)
            except QueueUnavailableError as e:
                logger.error(f"删除SQS消息失败: {message.message_id}: {e}")
        return all_acked

    async def run(self) -> None:
        """对账主循环，直到 stop() 被调用或任务被取消"""
        if not await self.queue.check_access():
            logger.error("无法访问SQS队列，请检查凭证、队列URL和权限，对账任务未启动")
            return

        logger.info("开始轮询存储事件通知")
        self.running = True
        try:
            while not self._stopping.is_set():
                try:
                    ok = await self.poll_once()
                except QueueUnavailableError as e:
                    logger.error(f"拉取SQS消息失败: {e}")
                    ok = False
                except Exception as e:
                    logger.error(f"对账循环出错: {type(e).__name__}: {e}")
                    ok = False

                if not ok:
                    await self._sleep(self.backoff_seconds)
        finally:
            self.running = False
            logger.info("存储事件对账任务已停止")

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def stop(self) -> None:
        self._stopping.set()


def build_reconciler(
    session_factory: Optional[Callable[[], AsyncSession]],
    config: Settings = settings
) -> Optional[CompletionReconciler]:
    """按配置创建对账任务，未启用或缺少依赖时返回None"""
    if not config.reconciler_enabled:
        logger.info("完成事件对账未启用")
        return None
    if not config.sqs_queue_url:
        logger.error("SQS_QUEUE_URL 未配置，完成事件对账已禁用")
        return None
    if session_factory is None:
        logger.error("数据库未配置，完成事件对账已禁用")
        return None

    return CompletionReconciler(get_notification_queue(), session_factory, config)
