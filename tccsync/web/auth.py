"""
API Key 认证模块
"""

from fastapi import Depends, HTTPException, Query, Request, status
from fastapi.security import APIKeyHeader
import secrets
from typing import Optional
import structlog

logger = structlog.get_logger()

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def verify_api_key(
    request: Request,
    header_key: Optional[str] = Depends(api_key_header),
    query_key: Optional[str] = Query(None, alias="api_key", include_in_schema=False)
) -> Optional[str]:
    """
    校验 API Key

    服务器没有配置 API Key 时跳过认证。
    请求可以通过 X-API-Key 请求头或 api_key 查询参数提供。

    Returns:
        通过校验的 API Key（未启用认证时为 None）

    Raises:
        HTTPException: 认证失败
    """
    expected = getattr(request.app.state, "api_key", None)
    if not expected:
        return None

    provided = header_key or query_key
    if not provided or not secrets.compare_digest(provided.encode(), expected.encode()):
        logger.warning("Authentication failed", path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )

    return provided
