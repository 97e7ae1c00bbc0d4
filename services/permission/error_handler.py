"""
统一错误处理与 request_id 生成模块

提供:
  1. generate_request_id() - 生成唯一 UUID request_id
  2. create_error_response() - 创建统一格式的错误 JSON 响应
  3. rbac_exception_handler() - 将 RBACError 转换为统一格式
  4. RequestIdMiddleware - 为每个请求注入 request_id 并通过 X-Request-Id 响应头返回

统一错误响应格式:
  {
      "error_code": "in_use",
      "message": "权限 user.read 正在使用中，无法删除",
      "details": {"permission": "user.read", "groups": ["ADMIN"], "children": []},
      "request_id": "550e8400-e29b-41d4-a716-446655440000"
  }

错误码定义:
  invalid_code_format   422  编码格式无效
  immutable_field       422  试图修改不可变字段
  invalid_parent        422  父权限不存在或形成环
  unknown_permission    422  分配了不存在的权限
  inactive_permission   422  分配了未激活的权限
  unknown_group         422  引用了不存在的组
  unknown_user          422  引用了不存在的用户
  validation_error      422  请求参数验证失败
  unauthenticated       401  缺少操作人
  forbidden             403  操作人缺少所需权限
  not_found             404  资源不存在
  duplicate_code        409  编码已存在
  in_use                409  权限仍被引用
  internal_error        500  服务内部错误
"""
import logging
import uuid
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from shared.exceptions import RBACError

logger = logging.getLogger(__name__)


STATUS_CODE_ERROR_MAP = {
    400: "bad_request",
    401: "unauthenticated",
    403: "forbidden",
    404: "not_found",
    405: "method_not_allowed",
    409: "conflict",
    422: "validation_error",
    500: "internal_error",
}


def generate_request_id() -> str:
    """生成唯一的 request_id（UUID4 格式）"""
    return str(uuid.uuid4())


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or generate_request_id()


def create_error_response(
    status_code: int,
    error_code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    request_id: Optional[str] = None,
) -> JSONResponse:
    """
    创建统一格式的错误 JSON 响应

    Args:
        status_code: HTTP 状态码
        error_code: 机器可读的错误码
        message: 人类可读的错误描述
        details: 结构化的错误详情
        request_id: 请求追踪 ID，为 None 时自动生成

    Returns:
        JSONResponse 包含统一错误格式和 X-Request-Id 响应头
    """
    if request_id is None:
        request_id = generate_request_id()

    body = {
        "error_code": error_code,
        "message": message,
        "details": details or {},
        "request_id": request_id,
    }

    return JSONResponse(
        status_code=status_code,
        content=body,
        headers={"X-Request-Id": request_id},
    )


def _extract_error_code_and_message(status_code: int, detail) -> tuple:
    """
    从 HTTPException 的 detail 中提取 error_code 和 message

    支持 dict（{"error_code", "message"}）和 str 两种格式
    """
    default_code = STATUS_CODE_ERROR_MAP.get(status_code, "internal_error")

    if isinstance(detail, dict):
        return detail.get("error_code", default_code), detail.get("message", str(detail))

    if isinstance(detail, str):
        return default_code, detail

    return default_code, str(detail) if detail else "未知错误"


async def rbac_exception_handler(request: Request, exc: RBACError) -> JSONResponse:
    """将领域异常转换为统一错误格式，保留 details"""
    return create_error_response(
        status_code=exc.status_code,
        error_code=exc.code,
        message=exc.message,
        details=exc.details,
        request_id=_request_id(request),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    error_code, message = _extract_error_code_and_message(exc.status_code, exc.detail)
    return create_error_response(
        status_code=exc.status_code,
        error_code=error_code,
        message=message,
        request_id=_request_id(request),
    )


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """将 Pydantic 验证错误转换为 validation_error，details 中列出出错字段"""
    fields = [
        ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        for error in exc.errors()
    ]
    return create_error_response(
        status_code=422,
        error_code="validation_error",
        message="请求参数验证失败",
        details={"fields": fields},
        request_id=_request_id(request),
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """兜底异常处理器，不暴露内部错误堆栈"""
    request_id = _request_id(request)
    logger.exception("未处理的异常: %s %s request_id=%s", request.method, request.url.path, request_id)
    return create_error_response(
        status_code=500,
        error_code="internal_error",
        message="服务内部错误",
        request_id=request_id,
    )


def register_exception_handlers(app) -> None:
    """在 FastAPI 应用上注册全部异常处理器"""
    app.add_exception_handler(RBACError, rbac_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)


class RequestIdMiddleware(BaseHTTPMiddleware):
    """
    为每个请求生成唯一 request_id

    存入 request.state.request_id，并在响应中写入 X-Request-Id 响应头
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = generate_request_id()
        request.state.request_id = request_id

        response = await call_next(request)

        if "X-Request-Id" not in response.headers:
            response.headers["X-Request-Id"] = request_id

        return response
