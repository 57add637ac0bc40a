"""核心配置模块

处理环境变量读取、数据库URL的异步转换以及上传相关的参数
"""

from functools import lru_cache
from typing import Optional

from pydantic import Field, computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


MIB = 1024 * 1024
GIB = 1024 * MIB


class Settings(BaseSettings):
    """应用配置类

    自动从环境变量和.env文件读取配置
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # 数据库配置
    database_url: Optional[str] = Field(
        default=None,
        description="PostgreSQL数据库连接URL（同步格式）"
    )

    # Redis配置
    redis_url: Optional[str] = Field(
        default=None,
        description="Redis连接URL，用于保存上传会话绑定"
    )

    # S3 / S3兼容存储配置
    endpoint_url: Optional[str] = Field(
        default=None,
        description="S3兼容服务端点URL，使用AWS时留空"
    )
    aws_access_key_id: Optional[str] = Field(default=None, description="访问密钥ID")
    aws_secret_access_key: Optional[str] = Field(default=None, description="秘密访问密钥")
    region_name: str = Field(default="us-east-1", description="存储区域名称")
    bucket_name: str = Field(default="chunkbridge-uploads", description="上传目标存储桶")
    configure_bucket_cors: bool = Field(
        default=False,
        description="启动时为存储桶设置CORS规则（暴露ETag响应头）"
    )

    # SQS通知队列配置
    sqs_queue_url: Optional[str] = Field(default=None, description="存储事件通知队列URL")
    sqs_endpoint_url: Optional[str] = Field(default=None, description="SQS服务端点URL，使用AWS时留空")
    reconciler_enabled: bool = Field(default=True, description="是否启动完成事件对账任务")
    queue_wait_seconds: int = Field(default=20, ge=0, le=20, description="长轮询等待时间（秒）")
    queue_max_messages: int = Field(default=5, ge=1, le=10, description="单次拉取的最大消息数")
    reconciler_backoff_seconds: float = Field(default=5.0, ge=0, description="出错后的退避时间（秒）")

    # 分片上传配置
    chunk_size: int = Field(default=5 * MIB, ge=5 * MIB, description="分片大小（字节），不小于存储端最小分片")
    max_file_size: int = Field(default=1 * GIB, gt=0, description="单个文件最大大小（字节）")
    session_ttl: int = Field(default=24 * 60 * 60, gt=0, description="上传会话绑定过期时间（秒）")
    presigned_url_expires: int = Field(default=3600, gt=0, description="分片预签名URL过期时间（秒）")
    presign_concurrency: int = Field(default=8, ge=1, description="并发生成预签名URL的上限")

    # 过期上传清理
    sweeper_enabled: bool = Field(default=False, description="是否启动过期上传清理任务")
    sweep_interval_seconds: int = Field(default=3600, gt=0, description="清理任务执行间隔（秒）")

    # 认证配置
    auth_enabled: bool = Field(default=True, description="是否校验Bearer令牌")
    jwt_public_key: Optional[str] = Field(default=None, description="JWT验签公钥")
    jwt_algorithm: str = Field(default="RS256", description="JWT签名算法")

    # 应用配置
    app_name: str = Field(default="ChunkBridge", description="应用名称")
    app_version: str = Field(default="0.1.0", description="应用版本")
    debug: bool = Field(default=False, description="调试模式")
    host: str = Field(default="0.0.0.0", description="服务器主机")
    port: int = Field(default=8000, description="服务器端口")
    log_level: str = Field(default="INFO", description="日志级别")
    log_file: Optional[str] = Field(default=None, description="日志文件路径，留空则只输出到stderr")
    cors_origins: list[str] = Field(
        default=["http://localhost:5173", "http://localhost:4173"],
        description="允许的跨域来源"
    )

    @computed_field
    @property
    def async_database_url(self) -> Optional[str]:
        """将同步PostgreSQL URL转换为异步URL

        asyncpg需要postgresql+asyncpg://前缀

        Returns:
            Optional[str]: 异步数据库连接URL，如果未配置则返回None
        """
        if not self.database_url:
            return None

        if self.database_url.startswith("postgresql://"):
            return self.database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
        elif self.database_url.startswith("postgres://"):
            return self.database_url.replace("postgres://", "postgresql+asyncpg://", 1)
        return self.database_url

    @computed_field
    @property
    def async_redis_url(self) -> Optional[str]:
        """处理Redis URL确保使用redis://前缀

        Returns:
            Optional[str]: Redis连接URL，如果未配置则返回None
        """
        if not self.redis_url:
            return None

        if not self.redis_url.startswith(("redis://", "rediss://")):
            return f"redis://{self.redis_url}"
        return self.redis_url

    @computed_field
    @property
    def s3_config(self) -> dict[str, Optional[str]]:
        """boto3客户端配置字典

        未配置的密钥交给boto3默认凭证链处理

        Returns:
            dict: boto3客户端参数
        """
        return {
            "endpoint_url": self.endpoint_url,
            "aws_access_key_id": self.aws_access_key_id,
            "aws_secret_access_key": self.aws_secret_access_key,
            "region_name": self.region_name,
        }

    @computed_field
    @property
    def sqs_config(self) -> dict[str, Optional[str]]:
        """boto3 SQS客户端配置字典"""
        return {
            "endpoint_url": self.sqs_endpoint_url,
            "aws_access_key_id": self.aws_access_key_id,
            "aws_secret_access_key": self.aws_secret_access_key,
            "region_name": self.region_name,
        }


@lru_cache
def get_settings() -> Settings:
    """获取应用配置单例

    使用lru_cache确保配置只被加载一次

    Returns:
        Settings: 应用配置实例
    """
    return Settings()


# 导出配置实例供其他模块使用
settings = get_settings()
