"""上传功能数据模型

定义文件记录、分片记录表以及上传接口的请求/响应模型
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict
from pydantic import Field as PydanticField
from sqlalchemy import BigInteger, UniqueConstraint
from sqlmodel import Field, SQLModel


class FileStatus(str, Enum):
    PENDING = "PENDING"
    UPLOADING = "UPLOADING"
    UPLOADED = "UPLOADED"
    FAILED = "FAILED"


class ChunkStatus(str, Enum):
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class FileRecord(SQLModel, table=True):
    """文件记录表

    保存文件身份、归属和生命周期状态
    """

    __tablename__ = "file_records"

    file_id: str = Field(primary_key=True, max_length=100, description="文件ID")
    file_name: str = Field(max_length=255, description="原始文件名")
    mime_type: str = Field(max_length=255, description="文件MIME类型")
    size: Optional[int] = Field(default=None, sa_type=BigInteger, description="文件大小（字节）")
    storage_key: str = Field(max_length=1024, unique=True, index=True, description="对象存储键名")
    owner_id: str = Field(max_length=100, index=True, description="上传者ID")
    status: str = Field(
        default=FileStatus.PENDING.value,
        max_length=20,
        index=True,
        description="上传状态: PENDING, UPLOADING, UPLOADED, FAILED"
    )
    upload_id: Optional[str] = Field(default=None, max_length=1024, description="分片上传ID")
    created_at: datetime = Field(default_factory=datetime.utcnow, description="创建时间")
    updated_at: Optional[datetime] = Field(default=None, description="更新时间")


class Chunk(SQLModel, table=True):
    """分片记录表

    客户端上报分片完成时写入，(file_id, chunk_index) 唯一
    """

    __tablename__ = "chunks"
    __table_args__ = (
        UniqueConstraint("file_id", "chunk_index", name="uq_chunks_file_id_chunk_index"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    file_id: str = Field(foreign_key="file_records.file_id", max_length=100, index=True)
    chunk_index: int = Field(description="分片序号，从1开始")
    size: int = Field(sa_type=BigInteger, description="分片大小（字节）")
    checksum: str = Field(max_length=255, description="存储端返回的分片ETag")
    storage_key: str = Field(max_length=1024, description="对象存储键名")
    status: str = Field(default=ChunkStatus.COMPLETED.value, max_length=20)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class GetUrlsRequest(BaseModel):
    """获取分片上传URL的请求模型

    file_size 的正数与上限校验放在服务层，以便返回 InvalidSize
    """

    file_id: str = PydanticField(min_length=1, max_length=100)
    file_name: str = PydanticField(min_length=1, max_length=255)
    mime_type: str = PydanticField(min_length=1, max_length=255)
    file_size: int
    user_id: str = PydanticField(min_length=1, max_length=100)
    storage_key: str = PydanticField(min_length=1, max_length=1024)


class GetUrlsResponse(BaseModel):
    """分片上传URL响应模型

    presignedUrls 的长度始终等于分片数
    """

    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    presigned_urls: list[str] = PydanticField(alias="presignedUrls")
    upload_id: str = PydanticField(alias="uploadId")


class RecordChunkRequest(BaseModel):
    """上报分片完成的请求模型"""

    file_id: str = PydanticField(min_length=1, max_length=100)
    chunk_index: int
    size: int = PydanticField(gt=0)
    etag: str = PydanticField(min_length=1, max_length=255)
    storage_key: str = PydanticField(min_length=1, max_length=1024)


class UploadedPart(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    part_number: int = PydanticField(alias="PartNumber", ge=1)
    etag: str = PydanticField(alias="ETag", min_length=1)


class CompleteUploadRequest(BaseModel):
    """完成分片上传的请求模型"""

    model_config = ConfigDict(populate_by_name=True)

    upload_id: str = PydanticField(alias="uploadId", min_length=1)
    parts: list[UploadedPart] = PydanticField(min_length=1)
    file_id: str = PydanticField(alias="fileId", min_length=1)


class SuccessBody(BaseModel):
    success: bool = True
    message: Optional[str] = None


class FileRecordRead(BaseModel):
    """文件记录及分片进度响应模型"""

    model_config = ConfigDict(from_attributes=True)

    file_id: str
    file_name: str
    mime_type: str
    size: Optional[int] = None
    storage_key: str
    owner_id: str
    status: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    chunks_recorded: int = 0
    chunks_expected: Optional[int] = None
