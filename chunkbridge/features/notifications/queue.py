"""SQS通知队列

封装存储事件通知队列的长轮询收取和确认删除
"""

import asyncio
from dataclasses import dataclass
from functools import lru_cache, partial
from typing import Any, Callable

import boto3
from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from chunkbridge.core.config import settings


class QueueUnavailableError(Exception):
    """队列请求失败"""


@dataclass(frozen=True)
class QueueMessage:
    message_id: str
    receipt_handle: str
    body: str


class SqsNotificationQueue:
    """基于boto3的SQS队列

    与S3网关一样，同步请求放到默认执行器中运行
    """

    def __init__(
        self,
        client: BaseClient,
        queue_url: str,
        wait_seconds: int = 20,
        max_messages: int = 5
    ) -> None:
        self.client = client
        self.queue_url = queue_url
        self.wait_seconds = wait_seconds
        self.max_messages = max_messages

    async def _call(self, func: Callable[..., Any], **kwargs: Any) -> Any:
        return await asyncio.get_running_loop().run_in_executor(None, partial(func, **kwargs))

    async def receive(self) -> list[QueueMessage]:
        """长轮询拉取一批消息

        Returns:
            list[QueueMessage]: 消息列表，等待超时没有消息时为空

        Raises:
            QueueUnavailableError: 拉取失败
        """
        try:
            response = await self._call(
                self.client.receive_message,
                QueueUrl=self.queue_url,
                MaxNumberOfMessages=self.max_messages,
                WaitTimeSeconds=self.wait_seconds,
            )
        except (ClientError, BotoCoreError) as e:
            raise QueueUnavailableError(str(e)) from e

        return [
            QueueMessage(
                message_id=message.get("MessageId", ""),
                receipt_handle=message["ReceiptHandle"],
                body=message.get("Body", ""),
            )
            for message in response.get("Messages", [])
        ]

    async def delete(self, receipt_handle: str) -> None:
        """确认并删除消息

        Raises:
            QueueUnavailableError: 删除失败
        """
        try:
            await self._call(
                self.client.delete_message,
                QueueUrl=self.queue_url,
                ReceiptHandle=receipt_handle,
            )
        except (ClientError, BotoCoreError) as e:
            raise QueueUnavailableError(str(e)) from e

    async def check_access(self) -> bool:
        """检查队列是否可访问

        只读取队列属性，不拉取消息，不影响消息的可见性
        """
        logger.info(f"检查SQS队列访问权限: {self.queue_url}")
        try:
            await self._call(
                self.client.get_queue_attributes,
                QueueUrl=self.queue_url,
                AttributeNames=["QueueArn"],
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"SQS队列访问检查失败: {self.queue_url}: {e}")
            return False

        logger.info("SQS队列访问检查通过")
        return True


@lru_cache
def get_sqs_client() -> BaseClient:
    """获取共享的boto3 SQS客户端"""
    return boto3.client("sqs", **settings.sqs_config)


def get_notification_queue() -> SqsNotificationQueue:
    return SqsNotificationQueue(
        get_sqs_client(),
        settings.sqs_queue_url,
        wait_seconds=settings.queue_wait_seconds,
        max_messages=settings.queue_max_messages,
    )
