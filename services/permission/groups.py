"""
权限组存储

组是一组权限编码的集合，通过成员关系授予用户。
组的授权是字面分配的权限集合，不沿权限层级展开。

set_group_permissions 对组行加锁（SELECT ... FOR UPDATE）后整体替换权限集合，
并发调用时最终结果恰好等于其中一次请求的集合，不会出现两次请求的并集或交集。
"""
import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import or_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shared.config import settings
from shared.exceptions import (
    DuplicateCodeError,
    ImmutableFieldError,
    InactivePermissionError,
    InvalidCodeFormatError,
    NotFoundError,
    UnknownPermissionError,
    ValidationError,
)
from shared.models.permission import Group, GroupPermission, Permission
from shared.utils.audit_log import record_activity
from shared.utils.validators import GROUP_CODE_PATTERN, validate_group_code, parse_uuid
from services.permission.cache import collect_group_member_ids, invalidate_users_permissions_cache

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("name", "description", "is_active")
NON_NULLABLE_FIELDS = ("name", "is_active")


def serialize_group(group: Group, permissions: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """将组记录转换为字典，可附带权限编码列表"""
    data = {
        "id": str(group.id),
        "code": group.code,
        "name": group.name,
        "description": group.description,
        "is_active": group.is_active,
        "created_at": group.created_at,
        "updated_at": group.updated_at,
    }
    if permissions is not None:
        data["permissions"] = sorted(permissions)
    return data


def _lock_group(db: Session, group_id: Any) -> Group:
    """加行锁读取组，不存在时回滚并抛出 NotFoundError"""
    group_uuid = parse_uuid(group_id)
    group = None
    if group_uuid is not None:
        group = db.query(Group).filter(Group.id == group_uuid).with_for_update().first()
    if not group:
        db.rollback()
        raise NotFoundError("group", group_id)
    return group


# ---------------------------------------------------------------------------
# 读取
# ---------------------------------------------------------------------------

def get_group(db: Session, group_id: Any) -> Group:
    """
    按ID获取组

    Raises:
        NotFoundError: 组不存在或ID格式无效
    """
    group_uuid = parse_uuid(group_id)
    group = db.query(Group).filter(Group.id == group_uuid).first() if group_uuid else None
    if not group:
        raise NotFoundError("group", group_id)
    return group


def list_groups(
    db: Session,
    search: Optional[str] = None,
    is_active: Optional[bool] = None,
    page: int = 1,
    limit: int = 50,
) -> Tuple[List[Group], int]:
    """分页查询组，按编码排序"""
    query = db.query(Group)

    if search:
        term = search.strip().lower()
        query = query.filter(or_(
            func.lower(Group.code).contains(term, autoescape=True),
            func.lower(Group.name).contains(term, autoescape=True),
        ))

    if is_active is not None:
        query = query.filter(Group.is_active.is_(is_active))

    total = query.count()
    page = max(page, 1)
    limit = max(limit, 1)
    items = query.order_by(Group.code.asc()).offset((page - 1) * limit).limit(limit).all()
    return items, total


def get_group_permissions(db: Session, group_id: Any) -> Set[str]:
    """
    获取组被直接分配的权限编码（不沿层级展开）

    Raises:
        NotFoundError: 组不存在
    """
    group = get_group(db, group_id)
    rows = db.query(GroupPermission.permission_code).filter(GroupPermission.group_id == group.id).all()
    return {row.permission_code for row in rows}


def get_groups_granting(db: Session, code: str) -> List[Group]:
    """查询授予指定权限的所有组"""
    return (
        db.query(Group)
        .join(GroupPermission, GroupPermission.group_id == Group.id)
        .filter(GroupPermission.permission_code == code)
        .order_by(Group.code)
        .all()
    )


# ---------------------------------------------------------------------------
# 变更
# ---------------------------------------------------------------------------

def create_group(
    db: Session,
    code: str,
    name: str,
    description: Optional[str] = None,
    is_active: bool = True,
    actor_id: Optional[Any] = None,
    request_meta: Optional[Dict[str, Optional[str]]] = None,
) -> Group:
    """
    创建组

    Raises:
        InvalidCodeFormatError: 编码格式无效
        ValidationError: 名称为空
        DuplicateCodeError: 编码已存在
    """
    if not validate_group_code(code):
        raise InvalidCodeFormatError(code, GROUP_CODE_PATTERN)
    if not name:
        raise ValidationError("名称不能为空", field="name")

    if db.query(Group.id).filter(Group.code == code).first():
        raise DuplicateCodeError("group", code)

    group = Group(code=code, name=name, description=description, is_active=is_active)
    db.add(group)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateCodeError("group", code)
    db.refresh(group)

    logger.info("组已创建: %s (%s)", code, group.id)
    record_activity(
        db, actor_id, "create", "group", resource_id=group.id,
        details={"code": code, "name": name, "is_active": is_active},
        request_meta=request_meta,
    )
    return group


def update_group(
    db: Session,
    group_id: Any,
    fields: Dict[str, Any],
    actor_id: Optional[Any] = None,
    request_meta: Optional[Dict[str, Optional[str]]] = None,
) -> Group:
    """
    更新组的名称、描述或激活状态，编码创建后不可修改

    Raises:
        NotFoundError: 组不存在
        ImmutableFieldError: 试图修改编码
        ValidationError: 包含未知字段，或 name / is_active 为空
    """
    unknown = set(fields) - set(UPDATABLE_FIELDS) - {"code"}
    if unknown:
        raise ValidationError(f"不支持更新的字段: {', '.join(sorted(unknown))}", fields=sorted(unknown))
    for field in NON_NULLABLE_FIELDS:
        if field in fields and fields[field] is None:
            raise ValidationError(f"{field} 不能为 null", field=field)

    group = _lock_group(db, group_id)
    if "code" in fields and fields["code"] != group.code:
        db.rollback()
        raise ImmutableFieldError("code")

    changes = {
        field: {"before": getattr(group, field), "after": fields[field]}
        for field in UPDATABLE_FIELDS
        if field in fields and fields[field] != getattr(group, field)
    }
    if "name" in changes and not changes["name"]["after"]:
        db.rollback()
        raise ValidationError("名称不能为空", field="name")
    if not changes:
        db.rollback()
        return group

    for field, change in changes.items():
        setattr(group, field, change["after"])
    db.commit()
    db.refresh(group)

    if "is_active" in changes:
        invalidate_users_permissions_cache(collect_group_member_ids(db, group.id))

    logger.info("组已更新: %s %s", group.code, sorted(changes))
    record_activity(
        db, actor_id, "update", "group", resource_id=group.id,
        details={"code": group.code, "changes": changes},
        request_meta=request_meta,
    )
    return group


def delete_group(
    db: Session,
    group_id: Any,
    actor_id: Optional[Any] = None,
    request_meta: Optional[Dict[str, Optional[str]]] = None,
) -> Dict[str, Any]:
    """
    删除组，同时移除该组的所有权限分配和成员关系

    Returns:
        {"code", "detached_users", "detached_permissions"}

    Raises:
        NotFoundError: 组不存在
    """
    group = _lock_group(db, group_id)
    member_ids = collect_group_member_ids(db, group.id)
    codes = sorted(
        row.permission_code
        for row in db.query(GroupPermission.permission_code).filter(GroupPermission.group_id == group.id)
    )
    summary = {
        "code": group.code,
        "detached_users": sorted(member_ids),
        "detached_permissions": codes,
    }
    group_uuid = group.id

    try:
        # group_permissions 和 user_groups 随组级联删除
        db.delete(group)
        db.commit()
    except Exception:
        db.rollback()
        raise

    invalidate_users_permissions_cache(member_ids)

    logger.info("组已删除: %s (%s)", summary["code"], group_uuid)
    record_activity(
        db, actor_id, "delete", "group", resource_id=group_uuid,
        details=summary,
        request_meta=request_meta,
    )
    return summary


def set_group_permissions(
    db: Session,
    group_id: Any,
    codes: Iterable[str],
    require_active: Optional[bool] = None,
    actor_id: Optional[Any] = None,
    request_meta: Optional[Dict[str, Optional[str]]] = None,
) -> Dict[str, List[str]]:
    """
    整体替换组的权限集合

    与当前状态求差集，只删除被移除的分配、只插入新增的分配，未变化的行保持不动。
    每次成功调用恰好记录一条操作日志，details 中的 added/removed 作用于旧集合即得到新集合。

    Args:
        db: 数据库会话
        group_id: 组ID
        codes: 新的权限编码集合
        require_active: 是否只允许授予激活的权限，None 时取 settings.REQUIRE_ACTIVE_GRANTS
        actor_id: 操作人用户ID
        request_meta: 请求来源信息

    Returns:
        {"added", "removed", "permissions"}

    Raises:
        NotFoundError: 组不存在
        UnknownPermissionError: 存在未知的权限编码
        InactivePermissionError: 要求只授予激活权限时包含未激活的权限
    """
    if require_active is None:
        require_active = settings.REQUIRE_ACTIVE_GRANTS
    requested = set(codes)

    group = _lock_group(db, group_id)

    found = {}
    if requested:
        rows = db.query(Permission.code, Permission.is_active).filter(Permission.code.in_(requested)).all()
        found = {row.code: row.is_active for row in rows}

    missing = requested - set(found)
    if missing:
        db.rollback()
        raise UnknownPermissionError(missing)

    if require_active:
        inactive = {code for code, active in found.items() if not active}
        if inactive:
            db.rollback()
            raise InactivePermissionError(inactive)

    current = {
        row.permission_code
        for row in db.query(GroupPermission.permission_code).filter(GroupPermission.group_id == group.id)
    }
    added = requested - current
    removed = current - requested

    try:
        if removed:
            (
                db.query(GroupPermission)
                .filter(
                    GroupPermission.group_id == group.id,
                    GroupPermission.permission_code.in_(removed),
                )
                .delete(synchronize_session=False)
            )
        for code in added:
            db.add(GroupPermission(group_id=group.id, permission_code=code))
        db.commit()
    except Exception:
        db.rollback()
        raise

    if added or removed:
        invalidate_users_permissions_cache(collect_group_member_ids(db, group.id))

    delta = {
        "added": sorted(added),
        "removed": sorted(removed),
        "permissions": sorted(requested),
    }
    logger.info("组权限已更新: %s +%d -%d", group.code, len(added), len(removed))
    record_activity(
        db, actor_id, "assign", "group", resource_id=group.id,
        details={
            "code": group.code,
            "target": "permissions",
            "added": delta["added"],
            "removed": delta["removed"],
            "before": sorted(current),
            "after": delta["permissions"],
        },
        request_meta=request_meta,
    )
    return delta
