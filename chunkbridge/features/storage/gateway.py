"""对象存储网关模块

封装S3分片上传的四个生命周期操作：初始化、分片预签名、完成、中止

网关本身不保存任何状态，一个实例绑定一个固定的 (bucket, key)。
其他组件只通过这里访问存储端，测试时可以替换成实现同样四个方法的假对象。
"""

import asyncio
from functools import lru_cache, partial
from typing import Any, Callable, Optional, Protocol, Sequence

import boto3
from botocore.client import BaseClient
from botocore.exceptions import BotoCoreError, ClientError
from loguru import logger

from chunkbridge.core.config import settings


# 存储端认为分片标签与实际数据不一致时返回的错误码
TAG_MISMATCH_CODES = {"InvalidPart", "InvalidPartOrder", "EntityTooSmall"}
NO_SUCH_UPLOAD = "NoSuchUpload"


class StorageGatewayError(Exception):
    """网关错误基类"""


class StorageBackendUnavailableError(StorageGatewayError):
    """存储端不可用或返回了无法归类的错误"""


class UploadNotInitiatedError(StorageGatewayError):
    """分片上传不存在（未初始化、已完成或已中止）"""


class PartTagMismatchError(StorageGatewayError):
    """完成上传时提交的分片标签与存储端记录不一致"""


class CompletedPart(Protocol):
    part_number: int
    etag: str


class ObjectStorageGateway(Protocol):
    """分片上传网关协议"""

    bucket: str
    key: str

    async def initiate(self) -> str: ...

    async def part_upload_credential(self, part_number: int, upload_id: str) -> str: ...

    async def complete(self, upload_id: str, parts: Sequence[CompletedPart]) -> None: ...

    async def abort(self, upload_id: str) -> None: ...


class GatewayFactory(Protocol):
    """按 (bucket, key) 创建网关的工厂协议"""

    bucket: str

    def for_object(self, bucket: str, key: str) -> ObjectStorageGateway: ...


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


class S3MultipartGateway:
    """基于boto3的分片上传网关

    boto3是同步客户端，所有请求都放到默认执行器中运行，避免阻塞事件循环
    """

    def __init__(
        self,
        client: BaseClient,
        bucket: str,
        key: str,
        url_expires_in: int = 3600
    ) -> None:
        self.client = client
        self.bucket = bucket
        self.key = key
        self.url_expires_in = url_expires_in

    async def _call(self, func: Callable[..., Any], **kwargs: Any) -> Any:
        return await asyncio.get_running_loop().run_in_executor(None, partial(func, **kwargs))

    async def initiate(self) -> str:
        """初始化分片上传

        每个逻辑上传只能调用一次

        Returns:
            str: 存储端返回的 upload_id

        Raises:
            StorageBackendUnavailableError: 存储端请求失败
        """
        try:
            response = await self._call(
                self.client.create_multipart_upload,
                Bucket=self.bucket,
                Key=self.key,
                ContentType="application/octet-stream",
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"初始化分片上传失败: {self.bucket}/{self.key}: {e}")
            raise StorageBackendUnavailableError(str(e)) from e

        upload_id = response.get("UploadId")
        if not upload_id:
            raise StorageBackendUnavailableError("存储端未返回UploadId")

        logger.info(f"分片上传已初始化: {self.key} ({upload_id})")
        return upload_id

    async def part_upload_credential(self, part_number: int, upload_id: str) -> str:
        """生成单个分片的预签名上传URL

        URL只授权对该分片序号的一次PUT；可重复调用，客户端重试时重新签发即可

        Args:
            part_number: 分片序号，从1开始
            upload_id: 分片上传ID

        Returns:
            str: 预签名URL

        Raises:
            UploadNotInitiatedError: upload_id为空
            StorageBackendUnavailableError: 签名失败
        """
        if not upload_id:
            raise UploadNotInitiatedError("分片上传尚未初始化")
        if part_number < 1:
            raise ValueError(f"分片序号必须从1开始: {part_number}")

        try:
            url = await self._call(
                self.client.generate_presigned_url,
                ClientMethod="upload_part",
                Params={
                    "Bucket": self.bucket,
                    "Key": self.key,
                    "UploadId": upload_id,
                    "PartNumber": part_number,
                },
                ExpiresIn=self.url_expires_in,
            )
        except (ClientError, BotoCoreError) as e:
            logger.error(f"生成分片预签名URL失败: part={part_number} upload={upload_id}: {e}")
            raise StorageBackendUnavailableError(str(e)) from e

        if not url:
            raise StorageBackendUnavailableError(f"分片 {part_number} 的预签名URL为空")
        return url

    async def complete(self, upload_id: str, parts: Sequence[CompletedPart]) -> None:
        """完成分片上传

        分片按序号升序提交，存储端逐一比对标签；任何不一致都会让整个操作失败，
        不存在部分完成

        Args:
            upload_id: 分片上传ID
            parts: 客户端收集到的 (分片序号, 标签) 列表

        Raises:
            PartTagMismatchError: 标签与存储端记录不一致
            UploadNotInitiatedError: 上传不存在
            StorageBackendUnavailableError: 其他存储端错误
        """
        ordered = sorted(parts, key=lambda part: part.part_number)
        try:
            await self._call(
                self.client.complete_multipart_upload,
                Bucket=self.bucket,
                Key=self.key,
                UploadId=upload_id,
                MultipartUpload={
                    "Parts": [
                        {"PartNumber": part.part_number, "ETag": part.etag}
                        for part in ordered
                    ]
                },
            )
        except ClientError as e:
            code = _error_code(e)
            if code in TAG_MISMATCH_CODES:
                raise PartTagMismatchError(f"{code}: {e}") from e
            if code == NO_SUCH_UPLOAD:
                raise UploadNotInitiatedError(upload_id) from e
            logger.error(f"完成分片上传失败: {upload_id}: {e}")
            raise StorageBackendUnavailableError(str(e)) from e
        except BotoCoreError as e:
            logger.error(f"完成分片上传失败: {upload_id}: {e}")
            raise StorageBackendUnavailableError(str(e)) from e

        logger.info(f"分片上传已完成: {self.key} ({upload_id})，共 {len(ordered)} 个分片")

    async def abort(self, upload_id: str) -> None:
        """中止分片上传

        幂等：上传不存在或已完成时直接返回

        Raises:
            StorageBackendUnavailableError: 其他存储端错误
        """
        try:
            await self._call(
                self.client.abort_multipart_upload,
                Bucket=self.bucket,
                Key=self.key,
                UploadId=upload_id,
            )
        except ClientError as e:
            if _error_code(e) == NO_SUCH_UPLOAD:
                logger.debug(f"分片上传不存在，无需中止: {upload_id}")
                return
            raise StorageBackendUnavailableError(str(e)) from e
        except BotoCoreError as e:
            raise StorageBackendUnavailableError(str(e)) from e

        logger.info(f"分片上传已中止: {self.key} ({upload_id})")


class S3GatewayFactory:
    """按 (bucket, key) 创建 S3MultipartGateway"""

    def __init__(self, client: BaseClient, bucket: str, url_expires_in: int = 3600) -> None:
        self.client = client
        self.bucket = bucket
        self.url_expires_in = url_expires_in

    def for_object(self, bucket: str, key: str) -> S3MultipartGateway:
        return S3MultipartGateway(self.client, bucket, key, self.url_expires_in)


@lru_cache
def get_s3_client() -> BaseClient:
    """获取共享的boto3 S3客户端

    boto3客户端是线程安全的，整个进程共用一个
    """
    client = boto3.client("s3", **settings.s3_config)
    logger.info(f"S3客户端已初始化，区域: {settings.region_name}，端点: {settings.endpoint_url or 'AWS'}")
    return client


def get_gateway_factory() -> GatewayFactory:
    """FastAPI依赖注入：获取网关工厂"""
    return S3GatewayFactory(
        get_s3_client(),
        settings.bucket_name,
        settings.presigned_url_expires,
    )


async def configure_bucket_cors(
    client: Optional[BaseClient] = None,
    bucket: Optional[str] = None,
    allowed_origins: Optional[list[str]] = None
) -> None:
    """为存储桶设置CORS规则

    浏览器直传分片后需要读取响应中的ETag头，必须在CORS规则中暴露

    Raises:
        StorageBackendUnavailableError: 设置失败
    """
    client = client or get_s3_client()
    bucket = bucket or settings.bucket_name
    cors_configuration = {
        "CORSRules": [
            {
                "AllowedHeaders": ["*"],
                "AllowedMethods": ["GET", "PUT", "POST", "DELETE", "HEAD"],
                "AllowedOrigins": allowed_origins or settings.cors_origins,
                "ExposeHeaders": ["ETag", "x-amz-request-id", "x-amz-version-id"],
                "MaxAgeSeconds": 3000,
            }
        ]
    }

    try:
        await asyncio.get_running_loop().run_in_executor(
            None,
            partial(client.put_bucket_cors, Bucket=bucket, CORSConfiguration=cors_configuration),
        )
    except (ClientError, BotoCoreError) as e:
        logger.error(f"设置存储桶CORS失败: {bucket}: {e}")
        raise StorageBackendUnavailableError(str(e)) from e

    logger.info(f"存储桶CORS规则已更新: {bucket}")
