"""
参考同步服务器

功能:
- FastAPI Web 服务
- GET/POST /api/sync 整体快照同步（服务器端并发检查）
- /api/tasks 单条任务接口
- X-API-Key 认证
"""

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from http import HTTPStatus
from starlette.exceptions import HTTPException as StarletteHTTPException
from typing import List, Optional
import structlog

from tccsync import __version__
from tccsync.web.auth import verify_api_key
from tccsync.web.database import DatabaseManager

logger = structlog.get_logger()


def create_app(
    db_path: str,
    api_key: Optional[str] = None,
    allowed_origins: Optional[List[str]] = None
) -> FastAPI:
    """
    创建 FastAPI 应用

    Args:
        db_path: SQLite 数据库文件路径
        api_key: API Key（为空时不启用认证）
        allowed_origins: 允许的 CORS 来源（默认全部）

    Returns:
        FastAPI 应用实例
    """
    app = FastAPI(
        title="tccsync sync server",
        description="整体快照同步服务",
        version=__version__
    )

    app.state.db = DatabaseManager(db_path)
    app.state.api_key = api_key

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins or ["*"],
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-API-Key"],
    )

    # 注册路由
    from tccsync.web.routes import sync, tasks

    auth = [Depends(verify_api_key)]
    app.include_router(sync.router, prefix="/api/sync", tags=["sync"], dependencies=auth)
    app.include_router(tasks.router, prefix="/api/tasks", tags=["tasks"], dependencies=auth)

    # 错误响应统一为 {success, error, message}
    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return _error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return _error_response(400, "; ".join(_format_error(e) for e in exc.errors()))

    # 健康检查
    @app.get("/health")
    async def health_check():
        """健康检查端点"""
        return {"status": "ok"}

    logger.info(
        "FastAPI application created",
        db_path=db_path,
        auth_enabled=bool(api_key)
    )

    return app


def _error_response(status_code: int, message: str) -> JSONResponse:
    try:
        error = HTTPStatus(status_code).phrase
    except ValueError:
        error = "Error"
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": error, "message": message}
    )


def _format_error(error: dict) -> str:
    location = ".".join(str(part) for part in error.get("loc", ()))
    return f"{location}: {error.get('msg')}"


__all__ = ['create_app']
