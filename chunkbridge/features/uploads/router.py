"""上传功能路由模块

提供分片上传会话相关的API端点
"""

from fastapi import APIRouter, Depends
from loguru import logger

from chunkbridge.core.security import get_current_user
from chunkbridge.shared.exceptions import BaseAPIException, InternalServerError
from chunkbridge.shared.schemas import APIResponse

from .models import (
    CompleteUploadRequest,
    FileRecordRead,
    GetUrlsRequest,
    GetUrlsResponse,
    RecordChunkRequest,
    SuccessBody,
)
from .service import UploadOrchestrator, get_upload_orchestrator


router = APIRouter()


@router.post(
    "/get-urls",
    response_model=GetUrlsResponse,
    response_model_by_alias=True,
    summary="获取分片上传URL",
    description="初始化分片上传，为每个分片生成预签名URL，客户端直接上传到对象存储"
)
async def get_upload_urls(
    request: GetUrlsRequest,
    orchestrator: UploadOrchestrator = Depends(get_upload_orchestrator),
    caller: str = Depends(get_current_user),
) -> GetUrlsResponse:
    """获取分片上传URL

    Args:
        request: 文件信息
        orchestrator: 上传编排器
        caller: 调用方身份

    Returns:
        GetUrlsResponse: uploadId 与全部分片的预签名URL
    """
    try:
        logger.info(f"请求分片上传URL: {request.file_name} ({request.file_size} bytes) by {caller}")
        return await orchestrator.begin_session(request)
    except BaseAPIException:
        raise
    except Exception as e:
        logger.error(f"生成分片上传URL失败: {request.file_id}: {e}")
        raise InternalServerError(f"生成分片上传URL失败: {str(e)}")


@router.post(
    "/record-chunk",
    response_model=SuccessBody,
    summary="上报分片完成",
    description="客户端上传完一个分片后上报其序号和ETag"
)
async def record_chunk(
    request: RecordChunkRequest,
    orchestrator: UploadOrchestrator = Depends(get_upload_orchestrator),
    caller: str = Depends(get_current_user),
) -> SuccessBody:
    try:
        await orchestrator.record_chunk(request)
        return SuccessBody(success=True)
    except BaseAPIException:
        raise
    except Exception as e:
        logger.error(f"记录分片失败: {request.file_id} #{request.chunk_index}: {e}")
        raise InternalServerError(f"记录分片失败: {str(e)}")


@router.post(
    "/complete-upload",
    response_model=SuccessBody,
    summary="完成分片上传",
    description="提交全部分片的序号和ETag，由存储端校验并合并为最终对象"
)
async def complete_upload(
    request: CompleteUploadRequest,
    orchestrator: UploadOrchestrator = Depends(get_upload_orchestrator),
    caller: str = Depends(get_current_user),
) -> SuccessBody:
    """完成分片上传

    校验失败或会话过期时客户端需要重新发起上传；
    只有存储暂不可用（500）时可以直接重试
    """
    try:
        await orchestrator.complete_upload(request)
        return SuccessBody(success=True, message="File upload completed")
    except BaseAPIException:
        raise
    except Exception as e:
        logger.error(f"完成分片上传失败: {request.file_id} ({request.upload_id}): {e}")
        raise InternalServerError(f"完成分片上传失败: {str(e)}")


@router.get(
    "/{file_id}",
    response_model=APIResponse[FileRecordRead],
    summary="获取文件记录",
    description="获取文件元数据、上传状态和分片进度"
)
async def get_file_record(
    file_id: str,
    orchestrator: UploadOrchestrator = Depends(get_upload_orchestrator),
    caller: str = Depends(get_current_user),
) -> APIResponse[FileRecordRead]:
    try:
        file_status = await orchestrator.get_file_status(file_id)
        return APIResponse(
            success=True,
            data=file_status,
            message="获取文件记录成功",
            code=200
        )
    except BaseAPIException:
        raise
    except Exception as e:
        logger.error(f"获取文件记录失败: {file_id}: {e}")
        raise InternalServerError(f"获取文件记录失败: {str(e)}")


@router.delete(
    "/{file_id}",
    response_model=SuccessBody,
    summary="删除文件记录",
    description="删除文件记录及分片记录，上传中的文件会先中止分片上传"
)
async def delete_file_record(
    file_id: str,
    orchestrator: UploadOrchestrator = Depends(get_upload_orchestrator),
    caller: str = Depends(get_current_user),
) -> SuccessBody:
    try:
        await orchestrator.delete_file(file_id)
        return SuccessBody(success=True, message="文件记录已删除")
    except BaseAPIException:
        raise
    except Exception as e:
        logger.error(f"删除文件记录失败: {file_id}: {e}")
        raise InternalServerError(f"删除文件记录失败: {str(e)}")
