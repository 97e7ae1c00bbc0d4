"""
权限目录

管理权限编码及其父子层级：
  - create_permission / update_permission / delete_permission 变更并记录操作日志
  - get_permission / list_permissions / get_permission_usage 读取
  - build_tree 纯函数，把平铺的权限列表投影为森林
  - seed_permissions 初始化默认权限体系
  - sync_permissions / cleanup_unused_permissions / group_by_module 处理从路由发现的权限

层级仅用于组织和展示，不参与授权：拥有父权限并不隐含拥有子权限。
写入时严格校验父权限存在且不成环；读取时 build_tree 对缺失父权限的节点按根节点处理。
修改层级（reparent、带子权限的强制删除）前按编码顺序锁定全部权限行，
层级变更彼此串行执行，祖先链校验读到的总是已提交的最新层级。
"""
import logging
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import or_, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from shared.exceptions import (
    DuplicateCodeError,
    ImmutableFieldError,
    InUseError,
    InvalidCodeFormatError,
    InvalidParentError,
    NotFoundError,
    ValidationError,
)
from shared.models.permission import Permission, Group, GroupPermission
from shared.utils.audit_log import record_activity
from shared.utils.validators import PERMISSION_CODE_PATTERN, validate_permission_code
from services.permission.cache import collect_permission_holder_ids, invalidate_users_permissions_cache

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ("name", "description", "is_active", "parent_code")
NON_NULLABLE_FIELDS = ("name", "is_active")

# 自动发现的权限在描述中带有该标记，cleanup 只处理带标记的权限
AUTO_DISCOVERED_MARKER = "Auto-discovered"

MODULE_DISPLAY_NAMES = {
    "system": "System Management",
    "user": "User Management",
    "group": "Group Management",
    "dashboard": "Dashboard",
    "audit": "Audit & Logs",
    "menu": "Menu Management",
    "general": "General",
}

ACTION_LABELS = {
    "read": "View",
    "view": "View",
    "create": "Create",
    "update": "Update",
    "delete": "Delete",
    "manage": "Manage",
}

# 默认权限体系（父权限必须排在子权限之前）
DEFAULT_PERMISSIONS = [
    # 菜单/导航权限
    {"code": "dashboard.view", "name": "View Dashboard", "description": "Access to dashboard page"},
    {"code": "system.manage", "name": "System Management", "description": "Access to system management section"},
    {"code": "system.users.manage", "name": "User Management", "description": "Access to user management", "parent_code": "system.manage"},
    {"code": "system.groups.manage", "name": "Group Management", "description": "Access to group management", "parent_code": "system.manage"},
    {"code": "system.menus.manage", "name": "Menu Management", "description": "Access to menu management", "parent_code": "system.manage"},
    # 操作权限
    {"code": "user.create", "name": "Create User", "description": "Create new users"},
    {"code": "user.update", "name": "Update User", "description": "Update existing users"},
    {"code": "user.delete", "name": "Delete User", "description": "Delete users"},
    {"code": "user.read", "name": "Read User", "description": "View user details"},
    {"code": "group.create", "name": "Create Group", "description": "Create new groups"},
    {"code": "group.update", "name": "Update Group", "description": "Update existing groups"},
    {"code": "group.delete", "name": "Delete Group", "description": "Delete groups"},
    {"code": "group.assign_permissions", "name": "Assign Group Permissions", "description": "Assign permissions to groups"},
    {"code": "menu.update_name", "name": "Update Menu Name", "description": "Update menu names"},
    {"code": "menu.rebind_permission", "name": "Rebind Menu Permission", "description": "Change permission binding for menus"},
    {"code": "audit.read", "name": "Read Audit Logs", "description": "View audit logs"},
]


def serialize_permission(permission: Permission) -> Dict[str, Any]:
    """将权限记录转换为字典"""
    return {
        "code": permission.code,
        "name": permission.name,
        "description": permission.description,
        "parent_code": permission.parent_code,
        "is_active": permission.is_active,
        "created_at": permission.created_at,
        "updated_at": permission.updated_at,
    }


# ---------------------------------------------------------------------------
# 读取
# ---------------------------------------------------------------------------

def get_permission(db: Session, code: str) -> Permission:
    """
    按编码获取权限

    Raises:
        NotFoundError: 权限不存在
    """
    permission = db.query(Permission).filter(Permission.code == code).first()
    if not permission:
        raise NotFoundError("permission", code)
    return permission


def list_permissions(
    db: Session,
    search: Optional[str] = None,
    is_active: Optional[bool] = None,
    page: int = 1,
    limit: int = 50,
) -> Tuple[List[Permission], int]:
    """
    分页查询权限，按编码排序

    Args:
        db: 数据库会话
        search: 在编码和名称上做不区分大小写的模糊匹配
        is_active: 激活状态过滤
        page: 页码（从1开始）
        limit: 每页数量

    Returns:
        (当前页权限, 总数)
    """
    query = db.query(Permission)

    if search:
        term = search.strip().lower()
        query = query.filter(or_(
            func.lower(Permission.code).contains(term, autoescape=True),
            func.lower(Permission.name).contains(term, autoescape=True),
        ))

    if is_active is not None:
        query = query.filter(Permission.is_active.is_(is_active))

    total = query.count()
    page = max(page, 1)
    limit = max(limit, 1)
    items = query.order_by(Permission.code.asc()).offset((page - 1) * limit).limit(limit).all()
    return items, total


def get_permission_usage(db: Session, code: str) -> Dict[str, List[str]]:
    """
    查询权限的使用情况：授予该权限的组，以及以该权限为父权限的子权限

    Returns:
        {"groups": [组编码], "children": [子权限编码]}

    Raises:
        NotFoundError: 权限不存在
    """
    get_permission(db, code)
    return _collect_usage(db, code)


def _collect_usage(db: Session, code: str) -> Dict[str, List[str]]:
    groups = (
        db.query(Group.code)
        .join(GroupPermission, GroupPermission.group_id == Group.id)
        .filter(GroupPermission.permission_code == code)
        .order_by(Group.code)
        .all()
    )
    children = (
        db.query(Permission.code)
        .filter(Permission.parent_code == code)
        .order_by(Permission.code)
        .all()
    )
    return {
        "groups": [row.code for row in groups],
        "children": [row.code for row in children],
    }


# ---------------------------------------------------------------------------
# 层级校验
# ---------------------------------------------------------------------------

def _lock_hierarchy(db: Session) -> None:
    """按编码顺序锁定全部权限行，直到当前事务结束"""
    db.query(Permission.code).order_by(Permission.code).with_for_update().all()


def _validate_parent(db: Session, code: str, parent_code: str) -> None:
    """
    校验父权限存在，且设置后不会使 code 成为自身的祖先

    沿新父权限的祖先链向上遍历，复杂度 O(深度)。

    Raises:
        InvalidParentError: 父权限不存在、指向自身或形成环
    """
    if parent_code == code:
        raise InvalidParentError(code, parent_code, "不能将自身设为父权限")

    exists = db.query(Permission.code).filter(Permission.code == parent_code).first()
    if not exists:
        raise InvalidParentError(code, parent_code, "父权限不存在")

    visited: Set[str] = set()
    current: Optional[str] = parent_code
    while current is not None:
        if current == code:
            raise InvalidParentError(code, parent_code, "会形成循环引用")
        if current in visited:
            # 已有数据中的环，同样拒绝
            raise InvalidParentError(code, parent_code, "祖先链中存在循环引用")
        visited.add(current)
        current = db.query(Permission.parent_code).filter(Permission.code == current).scalar()


# ---------------------------------------------------------------------------
# 变更
# ---------------------------------------------------------------------------

def create_permission(
    db: Session,
    code: str,
    name: str,
    description: Optional[str] = None,
    parent_code: Optional[str] = None,
    is_active: bool = True,
    actor_id: Optional[Any] = None,
    request_meta: Optional[Dict[str, Optional[str]]] = None,
) -> Permission:
    """
    创建权限

    Args:
        db: 数据库会话
        code: 权限编码（小写字母、数字、点、下划线）
        name: 显示名称
        description: 描述
        parent_code: 父权限编码，None 表示根权限
        is_active: 是否激活
        actor_id: 操作人用户ID
        request_meta: 请求来源信息

    Returns:
        新建的权限

    Raises:
        InvalidCodeFormatError: 编码格式无效
        ValidationError: 名称为空
        DuplicateCodeError: 编码已存在
        InvalidParentError: 父权限不存在
    """
    if not validate_permission_code(code):
        raise InvalidCodeFormatError(code, PERMISSION_CODE_PATTERN)
    if not name:
        raise ValidationError("名称不能为空", field="name")

    if db.query(Permission.code).filter(Permission.code == code).first():
        raise DuplicateCodeError("permission", code)

    if parent_code is not None:
        _validate_parent(db, code, parent_code)

    permission = Permission(
        code=code,
        name=name,
        description=description,
        parent_code=parent_code,
        is_active=is_active,
    )
    db.add(permission)
    try:
        db.commit()
    except IntegrityError:
        # 并发创建同一编码，或父权限在校验之后被删除
        db.rollback()
        if db.query(Permission.code).filter(Permission.code == code).first():
            raise DuplicateCodeError("permission", code)
        if parent_code is not None and not db.query(Permission.code).filter(Permission.code == parent_code).first():
            raise InvalidParentError(code, parent_code, "父权限不存在")
        raise
    db.refresh(permission)

    logger.info("权限已创建: %s", code)
    record_activity(
        db, actor_id, "create", "permission", resource_id=code,
        details={"code": code, "name": name, "parent_code": parent_code, "is_active": is_active},
        request_meta=request_meta,
    )
    return permission


def update_permission(
    db: Session,
    code: str,
    fields: Dict[str, Any],
    actor_id: Optional[Any] = None,
    request_meta: Optional[Dict[str, Optional[str]]] = None,
) -> Permission:
    """
    更新权限

    可更新字段：name、description、is_active、parent_code（None 表示提升为根权限）。
    修改 parent_code 时先锁定整个层级，再重新校验父权限存在性和无环性，
    校验失败时原父权限保持不变。

    Raises:
        NotFoundError: 权限不存在
        ImmutableFieldError: 试图修改编码
        ValidationError: 包含未知字段，或 name / is_active 为空
        InvalidParentError: 父权限不存在或会形成环
    """
    if "code" in fields and fields["code"] != code:
        raise ImmutableFieldError("code")
    unknown = set(fields) - set(UPDATABLE_FIELDS) - {"code"}
    if unknown:
        raise ValidationError(f"不支持更新的字段: {', '.join(sorted(unknown))}", fields=sorted(unknown))
    for field in NON_NULLABLE_FIELDS:
        if field in fields and fields[field] is None:
            raise ValidationError(f"{field} 不能为 null", field=field)

    if "parent_code" in fields:
        _lock_hierarchy(db)

    permission = (
        db.query(Permission)
        .filter(Permission.code == code)
        .with_for_update()
        .first()
    )
    if not permission:
        db.rollback()
        raise NotFoundError("permission", code)

    changes: Dict[str, Dict[str, Any]] = {}
    try:
        if "parent_code" in fields and fields["parent_code"] != permission.parent_code:
            if fields["parent_code"] is not None:
                _validate_parent(db, code, fields["parent_code"])
            changes["parent_code"] = {"before": permission.parent_code, "after": fields["parent_code"]}

        for field in ("name", "description", "is_active"):
            if field in fields and fields[field] != getattr(permission, field):
                if field == "name" and not fields[field]:
                    raise ValidationError("名称不能为空", field="name")
                changes[field] = {"before": getattr(permission, field), "after": fields[field]}
    except Exception:
        db.rollback()
        raise

    if not changes:
        db.rollback()
        return permission

    for field, change in changes.items():
        setattr(permission, field, change["after"])
    db.commit()
    db.refresh(permission)

    if "is_active" in changes:
        invalidate_users_permissions_cache(collect_permission_holder_ids(db, code))

    logger.info("权限已更新: %s %s", code, sorted(changes))
    record_activity(
        db, actor_id, "update", "permission", resource_id=code,
        details={"code": code, "changes": changes},
        request_meta=request_meta,
    )
    return permission


def delete_permission(
    db: Session,
    code: str,
    force: bool = False,
    actor_id: Optional[Any] = None,
    request_meta: Optional[Dict[str, Optional[str]]] = None,
) -> Dict[str, Any]:
    """
    删除权限

    删除前检查使用情况：仍被组授予或仍有子权限时，默认阻止删除并抛出 InUseError，
    携带阻止删除的组编码和子权限编码。force=True 时在同一事务内级联处理：
    子权限提升为根权限，并从所有组中移除该权限，只记录一条汇总操作日志。

    Returns:
        {"code", "cascade", "detached_children", "stripped_groups"}

    Raises:
        NotFoundError: 权限不存在
        InUseError: 权限正在使用且未指定 force
    """
    if force:
        # 可能要把子权限提升为根权限
        _lock_hierarchy(db)

    permission = (
        db.query(Permission)
        .filter(Permission.code == code)
        .with_for_update()
        .first()
    )
    if not permission:
        db.rollback()
        raise NotFoundError("permission", code)

    usage = _collect_usage(db, code)
    if (usage["groups"] or usage["children"]) and not force:
        db.rollback()
        raise InUseError(code, groups=usage["groups"], children=usage["children"])

    holder_ids = collect_permission_holder_ids(db, code) if usage["groups"] else set()

    try:
        if usage["children"]:
            (
                db.query(Permission)
                .filter(Permission.parent_code == code)
                .update({Permission.parent_code: None}, synchronize_session="fetch")
            )
        # group_permissions 随权限级联删除
        db.delete(permission)
        db.commit()
    except Exception:
        db.rollback()
        raise

    if holder_ids:
        invalidate_users_permissions_cache(holder_ids)

    summary = {
        "code": code,
        "cascade": bool(usage["groups"] or usage["children"]),
        "detached_children": usage["children"],
        "stripped_groups": usage["groups"],
    }
    logger.info("权限已删除: %s cascade=%s", code, summary["cascade"])
    record_activity(
        db, actor_id, "delete", "permission", resource_id=code,
        details=summary,
        request_meta=request_meta,
    )
    return summary


def seed_permissions(
    db: Session,
    actor_id: Optional[Any] = None,
    definitions: Optional[Iterable[Dict[str, Any]]] = None,
) -> List[str]:
    """
    初始化默认权限体系，已存在的编码跳过

    Returns:
        新建的权限编码列表
    """
    created = []
    for definition in definitions if definitions is not None else DEFAULT_PERMISSIONS:
        if db.query(Permission.code).filter(Permission.code == definition["code"]).first():
            continue
        create_permission(
            db,
            code=definition["code"],
            name=definition["name"],
            description=definition.get("description"),
            parent_code=definition.get("parent_code"),
            is_active=definition.get("is_active", True),
            actor_id=actor_id,
        )
        created.append(definition["code"])
    return created


# ---------------------------------------------------------------------------
# 自动发现的权限
# ---------------------------------------------------------------------------

def parent_code_of(code: str) -> Optional[str]:
    """按点号推导父权限编码：system.users.manage -> system.users"""
    parts = code.split(".")
    return ".".join(parts[:-1]) if len(parts) > 1 else None


def generate_permission_name(code: str) -> str:
    """user.create -> User Create"""
    return " ".join(part[:1].upper() + part[1:] for part in code.split("."))


def generate_permission_description(code: str) -> str:
    """user.create -> Create user"""
    parts = code.split(".")
    action = ACTION_LABELS.get(parts[-1], parts[-1])
    resource = " ".join(parts[:-1]) or "system"
    return f"{action} {resource}"


def module_display_name(module: str) -> str:
    return MODULE_DISPLAY_NAMES.get(module, module[:1].upper() + module[1:])


def describe_discovered(code: str, sources: Iterable[str]) -> Dict[str, Any]:
    """为路由上发现的权限编码生成名称、描述、模块和父权限"""
    return {
        "code": code,
        "name": generate_permission_name(code),
        "description": generate_permission_description(code),
        "module": code.split(".")[0] or "general",
        "parent_code": parent_code_of(code),
        "sources": sorted(sources),
    }


def group_by_module(discovered: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    按编码第一段分组

    Returns:
        [{"name", "display_name", "permissions"}]，模块和模块内权限均按编码排序
    """
    modules: Dict[str, List[Dict[str, Any]]] = {}
    for item in discovered:
        modules.setdefault(item["module"], []).append(item)
    return [
        {
            "name": name,
            "display_name": module_display_name(name),
            "permissions": sorted(items, key=lambda p: p["code"]),
        }
        for name, items in sorted(modules.items())
    ]


def _dotted_prefixes(codes: Iterable[str]) -> Set[str]:
    prefixes: Set[str] = set()
    for code in codes:
        parent = parent_code_of(code)
        while parent is not None:
            prefixes.add(parent)
            parent = parent_code_of(parent)
    return prefixes


def _discovered_note(sources: Iterable[str]) -> str:
    return f"({AUTO_DISCOVERED_MARKER} from: {', '.join(sources)})"


def sync_permissions(
    db: Session,
    discovered: List[Dict[str, Any]],
    actor_id: Optional[Any] = None,
) -> Dict[str, Any]:
    """
    把发现的权限同步到目录

    先按层级由浅到深补齐点号前缀对应的父权限，再创建缺失的权限。
    已存在但描述中没有发现标记的权限，在描述末尾追加来源说明。

    Returns:
        {"created", "updated", "discovered", "existing"}
    """
    created: List[str] = []
    updated: List[str] = []
    existing = 0
    codes = {item["code"] for item in discovered}

    for prefix in sorted(_dotted_prefixes(codes) - codes, key=lambda c: (c.count("."), c)):
        if db.query(Permission.code).filter(Permission.code == prefix).first():
            continue
        create_permission(
            db,
            code=prefix,
            name=generate_permission_name(prefix),
            description=f"Parent permission for {prefix} operations",
            parent_code=parent_code_of(prefix),
            actor_id=actor_id,
        )
        created.append(prefix)

    for item in sorted(discovered, key=lambda p: (p["code"].count("."), p["code"])):
        note = _discovered_note(item["sources"])
        permission = db.query(Permission).filter(Permission.code == item["code"]).first()
        if permission is None:
            create_permission(
                db,
                code=item["code"],
                name=item["name"],
                description=f"{item['description']} {note}",
                parent_code=item["parent_code"],
                actor_id=actor_id,
            )
            created.append(item["code"])
            continue

        existing += 1
        if AUTO_DISCOVERED_MARKER not in (permission.description or ""):
            description = f"{permission.description} {note}" if permission.description else note
            update_permission(db, item["code"], {"description": description}, actor_id=actor_id)
            updated.append(item["code"])

    logger.info("权限同步完成: 发现 %d 新建 %d 更新 %d", len(codes), len(created), len(updated))
    return {
        "created": created,
        "updated": updated,
        "discovered": len(codes),
        "existing": existing,
    }


def cleanup_unused_permissions(
    db: Session,
    discovered_codes: Iterable[str],
    dry_run: bool = True,
    actor_id: Optional[Any] = None,
) -> Dict[str, Any]:
    """
    清理路由上已不再使用的自动发现权限

    只考虑描述中带发现标记的权限；仍是某个已发现编码的点号前缀的权限保留。
    dry_run 时只返回候选列表。实际删除时跳过仍被组授予或仍有子权限的权限。

    Returns:
        {"dry_run", "candidates", "removed", "skipped"}
    """
    in_use = set(discovered_codes)
    prefixes = _dotted_prefixes(in_use)

    candidates = [
        row.code
        for row in db.query(Permission.code, Permission.description).order_by(Permission.code)
        if row.code not in in_use
        and row.code not in prefixes
        and AUTO_DISCOVERED_MARKER in (row.description or "")
    ]

    removed: List[str] = []
    skipped: List[str] = []
    if not dry_run:
        # 先删叶子，父权限的子权限被删除后才可能通过使用检查
        for code in sorted(candidates, key=lambda c: (-c.count("."), c)):
            try:
                delete_permission(db, code, actor_id=actor_id)
            except InUseError as e:
                logger.warning("跳过仍在使用的权限 %s: groups=%s children=%s", code, e.groups, e.children)
                skipped.append(code)
            else:
                removed.append(code)

    logger.info("权限清理%s: 候选 %d 删除 %d", "（试运行）" if dry_run else "", len(candidates), len(removed))
    return {
        "dry_run": dry_run,
        "candidates": candidates,
        "removed": sorted(removed),
        "skipped": sorted(skipped),
    }


# ---------------------------------------------------------------------------
# 树形投影
# ---------------------------------------------------------------------------

def build_tree(permissions: Iterable[Any]) -> List[Dict[str, Any]]:
    """
    把平铺的权限列表构建为森林

    节点的子节点是 parent_code 等于该节点编码的所有权限，按编码排序。
    声明的父权限不在列表中的权限按根节点处理；读取路径不因脏数据报错。

    Args:
        permissions: 具有 code、name、description、parent_code、is_active 属性的对象

    Returns:
        根节点列表，每个节点为 {"code", "name", "description", "parent_code", "is_active", "children"}
    """
    ordered = sorted(permissions, key=lambda p: p.code)
    nodes: Dict[str, Dict[str, Any]] = {}
    parent_of: Dict[str, Optional[str]] = {}

    for permission in ordered:
        nodes[permission.code] = {
            "code": permission.code,
            "name": permission.name,
            "description": permission.description,
            "parent_code": permission.parent_code,
            "is_active": permission.is_active,
            "children": [],
        }
        parent_of[permission.code] = permission.parent_code

    def _is_ancestor(candidate: str, start: Optional[str]) -> bool:
        seen: Set[str] = set()
        current = start
        while current is not None and current in nodes and current not in seen:
            if current == candidate:
                return True
            seen.add(current)
            current = parent_of.get(current)
        return False

    roots: List[Dict[str, Any]] = []
    for permission in ordered:
        node = nodes[permission.code]
        parent = permission.parent_code
        if parent is not None and parent in nodes and not _is_ancestor(permission.code, parent):
            nodes[parent]["children"].append(node)
        else:
            roots.append(node)
    return roots
