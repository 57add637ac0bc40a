"""自定义异常类定义

定义上传流程中使用的异常分类，每一类对应固定的HTTP状态码：

- InvalidInputError (400): 字段缺失或格式错误，客户端需修正后重新提交
- ConflictError (409): 分片重复上报，不影响整个上传
- NotFoundError (404): 上传会话不存在或已过期，需要从头开始
- VerificationFailedError (400): 完成时分片校验失败，需要从头开始
- StorageUnavailableError (500): 存储或数据库不可用，唯一允许客户端直接重试的类别
"""

from typing import Any, Optional

from fastapi import HTTPException


class BaseAPIException(HTTPException):
    """API异常基类

    所有自定义API异常都应该继承这个类
    """

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_type: str = "APIError",
        headers: Optional[dict[str, Any]] = None
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_type = error_type


class InvalidInputError(BaseAPIException):
    def __init__(self, detail: str = "请求参数无效", error_type: str = "InvalidInput"):
        super().__init__(status_code=400, detail=detail, error_type=error_type)


class InvalidSizeError(InvalidInputError):
    """文件大小不合法（非正数或超过上限）"""

    def __init__(self, detail: str = "文件大小无效"):
        super().__init__(detail=detail, error_type="InvalidSize")


class InvalidChunkError(InvalidInputError):
    """分片序号越界、字段缺失或存储键不匹配"""

    def __init__(self, detail: str = "分片信息无效"):
        super().__init__(detail=detail, error_type="InvalidChunk")


class UnauthorizedError(BaseAPIException):
    def __init__(self, detail: str = "未授权访问"):
        super().__init__(
            status_code=401,
            detail=detail,
            error_type="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"}
        )


class NotFoundError(BaseAPIException):
    def __init__(self, detail: str = "资源不存在", error_type: str = "NotFound"):
        super().__init__(status_code=404, detail=detail, error_type=error_type)


class SessionExpiredError(NotFoundError):
    """上传会话绑定不存在或已过期

    对该会话是终态，客户端必须重新发起上传
    """

    def __init__(self, detail: str = "上传会话不存在或已过期"):
        super().__init__(detail=detail, error_type="SessionExpiredOrUnknown")


class ConflictError(BaseAPIException):
    def __init__(self, detail: str = "资源冲突", error_type: str = "Conflict"):
        super().__init__(status_code=409, detail=detail, error_type=error_type)


class DuplicateChunkError(ConflictError):
    """同一文件的同一分片序号已被记录

    客户端应视为"已记录"继续上传
    """

    def __init__(self, detail: str = "分片已记录"):
        super().__init__(detail=detail, error_type="DuplicateChunk")


class VerificationFailedError(BaseAPIException):
    def __init__(self, detail: str = "校验失败", error_type: str = "VerificationFailed"):
        super().__init__(status_code=400, detail=detail, error_type=error_type)


class CompletionVerificationFailedError(VerificationFailedError):
    """完成上传时分片标签与存储端不一致"""

    def __init__(self, detail: str = "分片校验失败，请重新上传"):
        super().__init__(detail=detail, error_type="CompletionVerificationFailed")


class StorageUnavailableError(BaseAPIException):
    """对象存储、缓存或数据库不可用"""

    def __init__(self, detail: str = "存储服务暂不可用"):
        super().__init__(status_code=500, detail=detail, error_type="StorageUnavailable")


class InternalServerError(BaseAPIException):
    def __init__(self, detail: str = "服务器内部错误"):
        super().__init__(status_code=500, detail=detail, error_type="InternalServerError")
