"""FastAPI应用主入口

配置应用实例、中间件、路由、异常处理和生命周期事件
"""

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from sqlalchemy import text
from starlette.exceptions import HTTPException as StarletteHTTPException

from chunkbridge.core.config import settings
from chunkbridge.core.database import db_manager
from chunkbridge.core.logging import setup_logging
from chunkbridge.core.redis import redis_manager
from chunkbridge.features.notifications.reconciler import build_reconciler
from chunkbridge.features.storage.gateway import (
    StorageGatewayError,
    configure_bucket_cors,
    get_gateway_factory,
)
from chunkbridge.features.uploads.router import router as uploads_router
from chunkbridge.features.uploads.session_cache import get_session_cache
from chunkbridge.features.uploads.sweeper import StaleUploadSweeper
from chunkbridge.shared.exceptions import BaseAPIException
from chunkbridge.shared.schemas import APIResponse, ErrorResponse, HealthCheckResponse


async def _stop_task(task: Optional[asyncio.Task], name: str) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logger.error(f"{name}退出时出错: {e}")
    logger.info(f"{name}已停止")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期管理

    启动时运行数据库迁移并启动后台任务，关闭时停止后台任务并清理连接
    """
    setup_logging(settings)
    logger.info(f"正在启动 {settings.app_name} v{settings.app_version}...")

    try:
        if db_manager.engine:
            try:
                await db_manager.run_migrations()
            except Exception as migration_error:
                logger.warning(f"数据库迁移失败，尝试使用备用方法: {migration_error}")
                # 备用方法仅适用于开发环境
                if settings.debug:
                    await db_manager.create_tables_fallback()
                    logger.info("使用备用方法完成数据库表创建")
                else:
                    logger.error("生产环境下数据库迁移失败，应用启动终止")
                    raise
        else:
            logger.warning("数据库未配置，跳过数据库相关操作")

        if not redis_manager.redis_client:
            logger.warning("Redis未配置，上传会话接口将不可用")

        if settings.configure_bucket_cors:
            try:
                await configure_bucket_cors()
            except StorageGatewayError as e:
                logger.warning(f"存储桶CORS设置失败，继续启动: {e}")

    except Exception as e:
        logger.error(f"应用启动失败: {e}")
        raise

    reconciler = build_reconciler(db_manager.async_session)
    reconciler_task = asyncio.create_task(reconciler.run()) if reconciler else None
    app.state.reconciler = reconciler

    sweeper_task = None
    if settings.sweeper_enabled and db_manager.async_session:
        sweeper = StaleUploadSweeper(
            db_manager.async_session,
            get_session_cache(),
            get_gateway_factory(),
        )
        sweeper_task = asyncio.create_task(sweeper.run())

    logger.info("应用启动完成")

    yield

    logger.info("正在关闭应用...")

    if reconciler:
        reconciler.stop()
    await _stop_task(reconciler_task, "完成事件对账任务")
    await _stop_task(sweeper_task, "过期上传清理任务")

    try:
        await redis_manager.close()
        await db_manager.close()
        logger.info("应用关闭完成")
    except Exception as e:
        logger.error(f"应用关闭时出错: {e}")


app = FastAPI(
    title=settings.app_name,
    description="分片直传对象存储的上传编排服务",
    version=settings.app_version,
    debug=settings.debug,
    lifespan=lifespan
)


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_response(status_code: int, error: str, error_type: str, headers=None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, error_type=error_type).model_dump(),
        headers=headers,
    )


@app.exception_handler(BaseAPIException)
async def api_exception_handler(request: Request, exc: BaseAPIException) -> JSONResponse:
    """业务异常处理器

    按异常分类输出 {success, error, error_type}
    """
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} -> {exc.status_code} {exc.error_type}: {exc.detail}")
    else:
        logger.warning(f"{request.method} {request.url.path} -> {exc.status_code} {exc.error_type}: {exc.detail}")
    return _error_response(exc.status_code, str(exc.detail), exc.error_type, exc.headers)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    logger.warning(f"HTTP异常: {exc.status_code} - {exc.detail}")
    return _error_response(exc.status_code, str(exc.detail), "HTTPException", getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """请求体校验失败统一返回400"""
    error_type = "InvalidChunk" if request.url.path.endswith("/record-chunk") else "InvalidInput"
    errors = exc.errors()
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg')}" if location else str(first.get("msg"))
    else:
        message = "请求参数无效"

    logger.warning(f"请求参数校验失败: {request.url.path}: {message}")
    return _error_response(400, message, error_type)


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """通用异常处理器

    处理未捕获的异常，避免暴露内部错误信息
    """
    logger.error(f"未处理的异常: {type(exc).__name__}: {str(exc)}")
    return _error_response(
        500,
        "服务器内部错误" if not settings.debug else str(exc),
        "InternalServerError",
    )


@app.get(
    "/health",
    response_model=APIResponse[HealthCheckResponse],
    summary="健康检查",
    description="检查数据库、Redis、存储配置和对账任务的状态"
)
async def health_check(request: Request) -> APIResponse[HealthCheckResponse]:
    database_healthy = False
    try:
        if db_manager.async_session:
            async for session in db_manager.get_session():
                await session.execute(text("SELECT 1"))
            database_healthy = True
        else:
            logger.info("数据库未配置，跳过健康检查")
    except Exception as e:
        logger.error(f"数据库健康检查失败: {e}")

    redis_healthy = await redis_manager.ping()

    storage_healthy = bool(settings.bucket_name and settings.region_name)

    reconciler = getattr(request.app.state, "reconciler", None)
    reconciler_running = bool(reconciler and reconciler.running)

    overall_healthy = database_healthy and redis_healthy and storage_healthy

    health_data = HealthCheckResponse(
        status="healthy" if overall_healthy else "unhealthy",
        timestamp=datetime.utcnow().isoformat(),
        version=settings.app_version,
        database=database_healthy,
        redis=redis_healthy,
        storage=storage_healthy,
        reconciler=reconciler_running,
    )

    return APIResponse(
        success=overall_healthy,
        data=health_data,
        message="健康检查完成",
        code=200 if overall_healthy else 503
    )


app.include_router(
    uploads_router,
    prefix="/files",
    tags=["分片上传"]
)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "chunkbridge.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_level="info" if not settings.debug else "debug"
    )
