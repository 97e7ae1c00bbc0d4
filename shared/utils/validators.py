"""
验证工具模块
"""
import re
import uuid
from typing import Any, Optional

# 权限编码：小写字母、数字、点、下划线，如 user.create、system.users.manage
PERMISSION_CODE_PATTERN = r'^[a-z0-9][a-z0-9._]{0,99}$'

# 组编码：额外允许大写字母，如 ADMIN、ops.readonly
GROUP_CODE_PATTERN = r'^[A-Za-z0-9][A-Za-z0-9._]{0,99}$'


def validate_permission_code(code: str) -> bool:
    """
    验证权限编码格式

    Args:
        code: 权限编码

    Returns:
        是否为有效编码
    """
    if not isinstance(code, str):
        return False
    return bool(re.fullmatch(PERMISSION_CODE_PATTERN, code)) and not code.endswith('.') and '..' not in code


def validate_group_code(code: str) -> bool:
    """
    验证组编码格式

    Args:
        code: 组编码

    Returns:
        是否为有效编码
    """
    if not isinstance(code, str):
        return False
    return bool(re.fullmatch(GROUP_CODE_PATTERN, code)) and not code.endswith('.') and '..' not in code


def parse_uuid(value: Any) -> Optional[uuid.UUID]:
    """
    将字符串转换为UUID，无法转换时返回None
    """
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        return None
