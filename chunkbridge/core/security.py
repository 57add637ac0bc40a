"""认证依赖模块

校验Bearer令牌并提取调用方身份，用户管理不在本服务范围内
"""

from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt
from loguru import logger

from chunkbridge.shared.exceptions import UnauthorizedError

from .config import settings


bearer_scheme = HTTPBearer(auto_error=False)

ANONYMOUS_IDENTITY = "anonymous"


def verify_token(token: str) -> dict:
    """解码并校验JWT令牌

    Args:
        token: JWT字符串

    Returns:
        dict: 令牌载荷

    Raises:
        JWTError: 签名无效、过期或验签密钥未配置
    """
    if not settings.jwt_public_key:
        raise JWTError("JWT验签密钥未配置")
    return jwt.decode(token, settings.jwt_public_key, algorithms=[settings.jwt_algorithm])


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> str:
    """获取当前调用方身份的依赖注入函数

    Returns:
        str: 令牌中的 sub / userId / email 声明

    Raises:
        UnauthorizedError: 缺少令牌或令牌无效
    """
    if not settings.auth_enabled:
        return ANONYMOUS_IDENTITY

    if credentials is None:
        raise UnauthorizedError("缺少访问令牌")

    try:
        payload = verify_token(credentials.credentials)
    except JWTError as e:
        logger.warning(f"令牌校验失败: {e}")
        raise UnauthorizedError("访问令牌无效或已过期")

    identity = payload.get("sub") or payload.get("userId") or payload.get("email")
    if identity is None:
        raise UnauthorizedError("访问令牌缺少身份信息")

    return str(identity)
