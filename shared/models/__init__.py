"""
数据库模型
"""
from shared.models.user import User
from shared.models.permission import Permission, Group, GroupPermission, UserGroup
from shared.models.system import ActivityLog

__all__ = [
    "User",
    "Permission",
    "Group",
    "GroupPermission",
    "UserGroup",
    "ActivityLog",
]
