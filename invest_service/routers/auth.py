"""
请求认证
令牌由外部认证服务签发，本服务只做校验：sub 即用户 ID
"""

import logging
from typing import Optional

import jwt
from fastapi import Header, HTTPException, status

from invest_service.config import settings

logger = logging.getLogger(__name__)


def verify_token(token: str) -> Optional[str]:
    """校验 JWT，成功返回用户 ID"""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        logger.debug("Token 已过期")
        return None
    except jwt.InvalidTokenError as exc:
        logger.debug(f"Token 无效: {exc}")
        return None
    sub = payload.get("sub")
    return str(sub) if sub else None


async def get_current_user(
    authorization: Optional[str] = Header(default=None),
) -> str:
    """依赖注入：从 Bearer Token 解析当前用户 ID"""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="未提供认证令牌")
    user_id = verify_token(authorization[7:])
    if user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="令牌无效或已过期")
    return user_id
