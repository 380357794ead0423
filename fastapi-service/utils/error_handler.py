# utils/error_handler.py
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from typing import Optional
import logging

logger = logging.getLogger(__name__)

class APIError(Exception):
    """自定義 API 錯誤"""
    category = "InternalError"

    def __init__(self, message: str, status_code: int = 500, details: Optional[dict] = None):
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)


class Unauthorized(APIError):
    category = "Unauthorized"

    def __init__(self, message: str = "未授权访问", details: Optional[dict] = None):
        super().__init__(message, 401, details)


class Forbidden(APIError):
    category = "Forbidden"

    def __init__(self, message: str = "无权限访问该资源", details: Optional[dict] = None):
        super().__init__(message, 403, details)


class NotFound(APIError):
    category = "NotFound"

    def __init__(self, message: str = "资源不存在", details: Optional[dict] = None):
        super().__init__(message, 404, details)


class BadInput(APIError):
    category = "BadInput"

    def __init__(self, message: str = "缺少必要参数", details: Optional[dict] = None):
        super().__init__(message, 400, details)


class StorageFailure(APIError):
    category = "StorageFailure"

    def __init__(self, message: str = "数据存储失败", details: Optional[dict] = None):
        super().__init__(message, 500, details)


class UpstreamFailure(APIError):
    """AI 分析器呼叫失敗；retryable 表示呼叫端可以稍後重試（例如逾時）"""
    category = "UpstreamFailure"

    def __init__(self, message: str = "AI 分析失败", retryable: bool = False, details: Optional[dict] = None):
        self.retryable = retryable
        details = dict(details or {})
        details.setdefault("retryable", retryable)
        super().__init__(message, 503 if retryable else 502, details)


def error_payload(category: str, message: str, details: Optional[dict] = None) -> dict:
    return {
        "success": False,
        "error": category,
        "message": message,
        "details": details or {},
    }


async def handle_api_error(request: Request, exc: APIError) -> JSONResponse:
    """將自定義錯誤轉為統一的回應格式"""
    logger.warning(
        f"{exc.category} on {request.method} {request.url.path} "
        f"(user={request.headers.get('x-user-id')}): {exc.message}"
    )
    return JSONResponse(
        status_code=exc.status_code,
        content=error_payload(exc.category, exc.message, exc.details),
    )


async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning(f"BadInput on {request.method} {request.url.path}: {exc.errors()}")
    return JSONResponse(
        status_code=400,
        content=error_payload(
            BadInput.category,
            "请求参数无效",
            {"errors": [{"loc": list(e.get("loc", ())), "msg": e.get("msg")} for e in exc.errors()]},
        ),
    )


async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    """未預期的錯誤：記錄完整堆疊，但不把內部細節回傳給呼叫端"""
    logger.error(
        f"Unhandled error on {request.method} {request.url.path} "
        f"(user={request.headers.get('x-user-id')})",
        exc_info=exc,
    )
    return JSONResponse(status_code=500, content=error_payload("InternalError", "服务器错误"))


def register_error_handlers(app: FastAPI):
    app.add_exception_handler(APIError, handle_api_error)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
    app.add_exception_handler(Exception, handle_unexpected_error)
