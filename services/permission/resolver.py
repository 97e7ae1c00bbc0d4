"""
有效权限解析

用户的有效权限 = 用户所属的每个激活组被分配的权限的并集，并且只保留激活的权限。
只做集合运算，不沿权限层级展开。
"""
from typing import Any, Set

from sqlalchemy.orm import Session

from shared.models.permission import Group, GroupPermission, Permission, UserGroup
from shared.utils.validators import parse_uuid


def resolve(db: Session, user_id: Any) -> Set[str]:
    """
    解析用户的有效权限编码集合

    使用一条联表查询完成，读取到的是同一时刻的一致快照。
    不属于任何组的用户、未知用户或格式无效的ID都返回空集合。

    Args:
        db: 数据库会话
        user_id: 用户ID

    Returns:
        权限编码集合
    """
    user_uuid = parse_uuid(user_id)
    if user_uuid is None:
        return set()

    rows = (
        db.query(Permission.code)
        .join(GroupPermission, GroupPermission.permission_code == Permission.code)
        .join(Group, Group.id == GroupPermission.group_id)
        .join(UserGroup, UserGroup.group_id == Group.id)
        .filter(
            UserGroup.user_id == user_uuid,
            Group.is_active.is_(True),
            Permission.is_active.is_(True),
        )
        .distinct()
        .all()
    )
    return {row.code for row in rows}
