"""
权限引擎异常定义

异常分类：
  - 校验错误（ValidationError 及其子类、DuplicateCodeError、NotFoundError）：调用方的错误请求，
    同步返回，附带足够的信息用于修正请求，不做自动重试
  - 冲突错误（InUseError）：策略性阻止，附带阻止删除的引用列表，由人工或 force 路径处理
  - 基础设施错误（数据库不可用等）不在此定义，直接以 SQLAlchemyError 向上传播

授权检查返回 False 不是错误，不使用异常表达。
"""
from typing import Any, Dict, Iterable, List, Optional


class RBACError(Exception):
    """
    权限引擎异常基类

    属性：
        message: 人类可读的错误描述
        code: 机器可读的错误码
        status_code: 对应的 HTTP 状态码
        details: 结构化的错误详情
    """

    def __init__(
        self,
        message: str,
        *,
        code: str = "rbac_error",
        status_code: int = 400,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details: Dict[str, Any] = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(RBACError):
    def __init__(self, message: str, *, code: str = "validation_error", **details: Any):
        super().__init__(message, code=code, status_code=422, details=details)


class InvalidCodeFormatError(ValidationError):
    def __init__(self, code_value: str, pattern: str):
        super().__init__(
            f"编码格式无效: {code_value!r}",
            code="invalid_code_format",
            value=code_value,
            pattern=pattern,
        )


class ImmutableFieldError(ValidationError):
    def __init__(self, field: str):
        super().__init__(f"字段 {field} 创建后不可修改", code="immutable_field", field=field)


class InvalidParentError(ValidationError):
    def __init__(self, code_value: str, parent_code: str, reason: str):
        super().__init__(
            f"权限 {code_value} 的父权限 {parent_code} 无效: {reason}",
            code="invalid_parent",
            permission=code_value,
            parent_code=parent_code,
            reason=reason,
        )


def _sorted(values: Iterable[Any]) -> List[str]:
    return sorted(str(v) for v in values)


class UnknownPermissionError(ValidationError):
    def __init__(self, missing: Iterable[str]):
        missing = _sorted(missing)
        super().__init__(f"权限不存在: {', '.join(missing)}", code="unknown_permission", missing=missing)


class InactivePermissionError(ValidationError):
    def __init__(self, inactive: Iterable[str]):
        inactive = _sorted(inactive)
        super().__init__(f"权限未激活: {', '.join(inactive)}", code="inactive_permission", inactive=inactive)


class UnknownGroupError(ValidationError):
    def __init__(self, missing: Iterable[Any]):
        missing = _sorted(missing)
        super().__init__(f"组不存在: {', '.join(missing)}", code="unknown_group", missing=missing)


class UnknownUserError(ValidationError):
    def __init__(self, missing: Iterable[Any]):
        missing = _sorted(missing)
        super().__init__(f"用户不存在: {', '.join(missing)}", code="unknown_user", missing=missing)


class DuplicateCodeError(RBACError):
    def __init__(self, resource: str, code_value: str):
        super().__init__(
            f"{resource} 编码已存在: {code_value}",
            code="duplicate_code",
            status_code=409,
            details={"resource": resource, "value": code_value},
        )


class NotFoundError(RBACError):
    def __init__(self, resource: str, identifier: Any):
        super().__init__(
            f"{resource} 不存在: {identifier}",
            code="not_found",
            status_code=404,
            details={"resource": resource, "id": str(identifier)},
        )


class InUseError(RBACError):
    """权限仍被组引用或仍有子权限时阻止删除"""

    def __init__(self, code_value: str, groups: Iterable[str] = (), children: Iterable[str] = ()):
        self.groups = _sorted(groups)
        self.children = _sorted(children)
        super().__init__(
            f"权限 {code_value} 正在使用中，无法删除",
            code="in_use",
            status_code=409,
            details={"permission": code_value, "groups": self.groups, "children": self.children},
        )
