"""
成员关系存储

维护用户与组之间的多对多关系（user_groups 表）。

set_groups_for_user 和 set_users_for_group 是同一关系的两个入口，写入同一张表，
无论从哪个入口操作，得到的成员关系完全一致。

所有变更按固定顺序加行锁：先锁组（按ID排序），再锁用户（按ID排序），
加锁之后再读取当前成员关系。任何一对 (用户, 组) 的变更都持有该用户的行锁，
两个入口对同一对的并发写入因此串行执行，不会重复插入。

这里还包含一个最小的用户登记（仅用户名、姓名、激活状态），
凭证和个人资料由外部系统管理。
"""
import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import or_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shared.exceptions import (
    DuplicateCodeError,
    NotFoundError,
    UnknownGroupError,
    UnknownUserError,
    ValidationError,
)
from shared.models.permission import Group, UserGroup
from shared.models.user import User
from shared.utils.audit_log import record_activity
from shared.utils.validators import parse_uuid
from services.permission.cache import (
    invalidate_user_permissions_cache,
    invalidate_users_permissions_cache,
)

logger = logging.getLogger(__name__)


def serialize_user(user: User, group_ids: Optional[Iterable[Any]] = None) -> Dict[str, Any]:
    """将用户记录转换为字典，可附带组ID列表"""
    data = {
        "id": str(user.id),
        "username": user.username,
        "full_name": user.full_name,
        "is_active": user.is_active,
        "created_at": user.created_at,
        "updated_at": user.updated_at,
    }
    if group_ids is not None:
        data["group_ids"] = sorted(str(g) for g in group_ids)
    return data


def _resolve_ids(values: Iterable[Any]) -> Tuple[Set[Any], Set[str]]:
    """把ID转换为UUID，返回 (有效UUID集合, 格式无效的原始值集合)"""
    valid, invalid = set(), set()
    for value in values:
        parsed = parse_uuid(value)
        if parsed is None:
            invalid.add(str(value))
        else:
            valid.add(parsed)
    return valid, invalid


def _lock_groups(db: Session, group_ids: Iterable[Any]) -> Dict[Any, Group]:
    """按ID顺序锁定组行，返回其中存在的组"""
    ids = {g for g in group_ids if g is not None}
    if not ids:
        return {}
    rows = db.query(Group).filter(Group.id.in_(ids)).order_by(Group.id).with_for_update().all()
    return {row.id: row for row in rows}


def _lock_users(db: Session, user_ids: Iterable[Any]) -> Dict[Any, User]:
    """按ID顺序锁定用户行，返回其中存在的用户"""
    ids = {u for u in user_ids if u is not None}
    if not ids:
        return {}
    rows = db.query(User).filter(User.id.in_(ids)).order_by(User.id).with_for_update().all()
    return {row.id: row for row in rows}


def _lock_user(db: Session, user_id: Any) -> User:
    user_uuid = parse_uuid(user_id)
    user = _lock_users(db, [user_uuid]).get(user_uuid)
    if not user:
        db.rollback()
        raise NotFoundError("user", user_id)
    return user


def _lock_group(db: Session, group_id: Any) -> Group:
    group_uuid = parse_uuid(group_id)
    group = _lock_groups(db, [group_uuid]).get(group_uuid)
    if not group:
        db.rollback()
        raise NotFoundError("group", group_id)
    return group


# ---------------------------------------------------------------------------
# 用户登记
# ---------------------------------------------------------------------------

def get_user(db: Session, user_id: Any) -> User:
    """
    按ID获取用户

    Raises:
        NotFoundError: 用户不存在或ID格式无效
    """
    user_uuid = parse_uuid(user_id)
    user = db.query(User).filter(User.id == user_uuid).first() if user_uuid else None
    if not user:
        raise NotFoundError("user", user_id)
    return user


def list_users(db: Session, search: Optional[str] = None, page: int = 1, limit: int = 50) -> Tuple[List[User], int]:
    """分页查询用户，按用户名排序"""
    query = db.query(User)
    if search:
        term = search.strip().lower()
        query = query.filter(or_(
            func.lower(User.username).contains(term, autoescape=True),
            func.lower(User.full_name).contains(term, autoescape=True),
        ))
    total = query.count()
    page = max(page, 1)
    limit = max(limit, 1)
    items = query.order_by(User.username.asc()).offset((page - 1) * limit).limit(limit).all()
    return items, total


def create_user(
    db: Session,
    username: str,
    full_name: Optional[str] = None,
    is_active: bool = True,
    actor_id: Optional[Any] = None,
    request_meta: Optional[Dict[str, Optional[str]]] = None,
) -> User:
    """
    登记用户

    Raises:
        ValidationError: 用户名为空
        DuplicateCodeError: 用户名已存在
    """
    if not username or not username.strip():
        raise ValidationError("用户名不能为空", field="username")

    if db.query(User.id).filter(User.username == username).first():
        raise DuplicateCodeError("user", username)

    user = User(username=username, full_name=full_name, is_active=is_active)
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise DuplicateCodeError("user", username)
    db.refresh(user)

    record_activity(
        db, actor_id, "create", "user", resource_id=user.id,
        details={"username": username},
        request_meta=request_meta,
    )
    return user


def delete_user(
    db: Session,
    user_id: Any,
    actor_id: Optional[Any] = None,
    request_meta: Optional[Dict[str, Optional[str]]] = None,
) -> None:
    """
    删除用户，同时移除其所有组成员关系

    Raises:
        NotFoundError: 用户不存在
    """
    user = _lock_user(db, user_id)
    user_uuid = user.id
    username = user.username
    group_ids = get_user_group_ids(db, user_uuid)

    try:
        db.delete(user)
        db.commit()
    except Exception:
        db.rollback()
        raise

    invalidate_user_permissions_cache(user_uuid)
    record_activity(
        db, actor_id, "delete", "user", resource_id=user_uuid,
        details={"username": username, "detached_groups": sorted(group_ids)},
        request_meta=request_meta,
    )


# ---------------------------------------------------------------------------
# 成员关系读取
# ---------------------------------------------------------------------------

def get_user_group_ids(db: Session, user_id: Any) -> Set[str]:
    """获取用户所属的组ID集合，未知用户返回空集合"""
    user_uuid = parse_uuid(user_id)
    if user_uuid is None:
        return set()
    rows = db.query(UserGroup.group_id).filter(UserGroup.user_id == user_uuid).all()
    return {str(row.group_id) for row in rows}


def get_group_user_ids(db: Session, group_id: Any) -> Set[str]:
    """获取组的成员ID集合，未知组返回空集合"""
    group_uuid = parse_uuid(group_id)
    if group_uuid is None:
        return set()
    rows = db.query(UserGroup.user_id).filter(UserGroup.group_id == group_uuid).all()
    return {str(row.user_id) for row in rows}


# ---------------------------------------------------------------------------
# 成员关系变更
# ---------------------------------------------------------------------------

def set_groups_for_user(
    db: Session,
    user_id: Any,
    group_ids: Iterable[Any],
    actor_id: Optional[Any] = None,
    request_meta: Optional[Dict[str, Optional[str]]] = None,
) -> Dict[str, List[str]]:
    """
    整体替换用户所属的组

    Returns:
        {"added", "removed", "group_ids"}

    Raises:
        NotFoundError: 用户不存在
        UnknownGroupError: 存在未知的组ID
    """
    requested, invalid = _resolve_ids(group_ids)
    user_uuid = parse_uuid(user_id)
    known = set()
    if user_uuid is not None:
        known = {row.group_id for row in db.query(UserGroup.group_id).filter(UserGroup.user_id == user_uuid)}

    found = set(_lock_groups(db, requested | known))
    user = _lock_user(db, user_id)

    missing = {str(g) for g in requested - found} | invalid
    if missing:
        db.rollback()
        raise UnknownGroupError(missing)

    user_uuid = user.id
    current = {row.group_id for row in db.query(UserGroup.group_id).filter(UserGroup.user_id == user_uuid)}
    added = requested - current
    removed = current - requested

    try:
        if removed:
            (
                db.query(UserGroup)
                .filter(UserGroup.user_id == user_uuid, UserGroup.group_id.in_(removed))
                .delete(synchronize_session=False)
            )
        for group_uuid in added:
            db.add(UserGroup(user_id=user_uuid, group_id=group_uuid))
        db.commit()
    except Exception:
        db.rollback()
        raise

    if added or removed:
        invalidate_user_permissions_cache(user_uuid)

    delta = {
        "added": sorted(str(g) for g in added),
        "removed": sorted(str(g) for g in removed),
        "group_ids": sorted(str(g) for g in requested),
    }
    logger.info("用户组已更新: %s +%d -%d", user_uuid, len(added), len(removed))
    record_activity(
        db, actor_id, "assign", "user", resource_id=user_uuid,
        details={
            "target": "groups",
            "added": delta["added"],
            "removed": delta["removed"],
            "before": sorted(str(g) for g in current),
            "after": delta["group_ids"],
        },
        request_meta=request_meta,
    )
    return delta


def set_users_for_group(
    db: Session,
    group_id: Any,
    user_ids: Iterable[Any],
    actor_id: Optional[Any] = None,
    request_meta: Optional[Dict[str, Optional[str]]] = None,
) -> Dict[str, List[str]]:
    """
    整体替换组的成员

    Returns:
        {"added", "removed", "user_ids"}

    Raises:
        NotFoundError: 组不存在
        UnknownUserError: 存在未知的用户ID
    """
    requested, invalid = _resolve_ids(user_ids)
    group = _lock_group(db, group_id)

    known = {row.user_id for row in db.query(UserGroup.user_id).filter(UserGroup.group_id == group.id)}
    found = set(_lock_users(db, requested | known))

    current = {row.user_id for row in db.query(UserGroup.user_id).filter(UserGroup.group_id == group.id)}
    return _apply_group_members(
        db, group, requested, found, invalid, current, requested,
        actor_id=actor_id, request_meta=request_meta,
    )


def manage_group_users(
    db: Session,
    group_id: Any,
    add_user_ids: Iterable[Any] = (),
    remove_user_ids: Iterable[Any] = (),
    actor_id: Optional[Any] = None,
    request_meta: Optional[Dict[str, Optional[str]]] = None,
) -> Dict[str, List[str]]:
    """
    增量调整组成员：先加入 add_user_ids，再移除 remove_user_ids

    Raises:
        NotFoundError: 组不存在
        UnknownUserError: 待加入的用户不存在
    """
    to_add, invalid = _resolve_ids(add_user_ids)
    to_remove, _ = _resolve_ids(remove_user_ids)
    group = _lock_group(db, group_id)
    found = set(_lock_users(db, to_add | to_remove))

    current = {row.user_id for row in db.query(UserGroup.user_id).filter(UserGroup.group_id == group.id)}
    target = (current | to_add) - to_remove
    return _apply_group_members(
        db, group, to_add, found, invalid, current, target,
        actor_id=actor_id, request_meta=request_meta,
    )


def _apply_group_members(
    db: Session,
    group: Group,
    referenced: Set[Any],
    found: Set[Any],
    invalid: Set[str],
    current: Set[Any],
    target: Set[Any],
    actor_id: Optional[Any],
    request_meta: Optional[Dict[str, Optional[str]]],
) -> Dict[str, List[str]]:
    """
    在已锁定的组上把成员集合从 current 调整为 target

    referenced 中的用户必须都在 found（已锁定的存在用户）中
    """
    missing = {str(u) for u in referenced - found} | invalid
    if missing:
        db.rollback()
        raise UnknownUserError(missing)

    added = target - current
    removed = current - target
    group_uuid = group.id
    group_code = group.code

    try:
        if removed:
            (
                db.query(UserGroup)
                .filter(UserGroup.group_id == group_uuid, UserGroup.user_id.in_(removed))
                .delete(synchronize_session=False)
            )
        for user_uuid in added:
            db.add(UserGroup(user_id=user_uuid, group_id=group_uuid))
        db.commit()
    except Exception:
        db.rollback()
        raise

    invalidate_users_permissions_cache(added | removed)

    delta = {
        "added": sorted(str(u) for u in added),
        "removed": sorted(str(u) for u in removed),
        "user_ids": sorted(str(u) for u in target),
    }
    logger.info("组成员已更新: %s +%d -%d", group_code, len(added), len(removed))
    record_activity(
        db, actor_id, "assign", "group", resource_id=group_uuid,
        details={
            "code": group_code,
            "target": "users",
            "added": delta["added"],
            "removed": delta["removed"],
            "before": sorted(str(u) for u in current),
            "after": delta["user_ids"],
        },
        request_meta=request_meta,
    )
    return delta


def add_user_to_group(
    db: Session,
    user_id: Any,
    group_id: Any,
    actor_id: Optional[Any] = None,
    request_meta: Optional[Dict[str, Optional[str]]] = None,
) -> bool:
    """
    把用户加入组，已是成员时不做任何变更

    Returns:
        是否新增了成员关系

    Raises:
        NotFoundError: 用户或组不存在
    """
    group = _lock_group(db, group_id)
    user_uuid = _lock_user(db, user_id).id

    group_uuid = group.id
    existing = db.query(UserGroup).filter(UserGroup.user_id == user_uuid, UserGroup.group_id == group_uuid).first()
    if existing:
        db.rollback()
        return False

    db.add(UserGroup(user_id=user_uuid, group_id=group_uuid))
    try:
        db.commit()
    except IntegrityError:
        # 并发加入，结果相同
        db.rollback()
        return False

    invalidate_user_permissions_cache(user_uuid)
    record_activity(
        db, actor_id, "assign", "user", resource_id=user_uuid,
        details={"target": "groups", "added": [str(group_uuid)], "removed": []},
        request_meta=request_meta,
    )
    return True


def remove_user_from_group(
    db: Session,
    user_id: Any,
    group_id: Any,
    actor_id: Optional[Any] = None,
    request_meta: Optional[Dict[str, Optional[str]]] = None,
) -> bool:
    """
    把用户移出组（幂等）

    成员关系不存在时视为成功，不记录操作日志。

    Returns:
        是否实际移除了成员关系
    """
    user_uuid = parse_uuid(user_id)
    group_uuid = parse_uuid(group_id)
    if user_uuid is None or group_uuid is None:
        return False

    try:
        _lock_groups(db, [group_uuid])
        _lock_users(db, [user_uuid])
        removed = (
            db.query(UserGroup)
            .filter(UserGroup.user_id == user_uuid, UserGroup.group_id == group_uuid)
            .delete(synchronize_session=False)
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    if not removed:
        return False

    invalidate_user_permissions_cache(user_uuid)
    record_activity(
        db, actor_id, "unassign", "user", resource_id=user_uuid,
        details={"target": "groups", "added": [], "removed": [str(group_uuid)]},
        request_meta=request_meta,
    )
    return True
