"""
权限服务主入口
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

import logging
from datetime import datetime
from typing import Dict, List, Optional

from fastapi import FastAPI, Depends, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text
from sqlalchemy.orm import Session

from shared.config import settings
from shared.database import get_db
from shared.redis_client import close_redis, get_redis
from shared.exceptions import ValidationError
from shared.utils.audit_log import (
    find_recent_activity,
    query_activity,
    serialize_activity,
)
from services.permission import catalog, gate, groups, membership
from services.permission.cache import clear_all_permissions_cache
from services.permission.dependencies import (
    discover_route_permissions,
    get_actor_id,
    get_request_context,
    require_permission,
)
from services.permission.error_handler import RequestIdMiddleware, register_exception_handlers
from services.permission.schemas import (
    ActivityLogListResponse,
    ActivityLogResponse,
    CacheClearResponse,
    CheckPermissionRequest,
    CheckPermissionResponse,
    CleanupRequest,
    CleanupResponse,
    DiscoveryResponse,
    EffectivePermissionsResponse,
    GroupCreate,
    GroupListResponse,
    GroupPermissionsDelta,
    GroupPermissionsSet,
    GroupResponse,
    GroupUpdate,
    GroupUsersDelta,
    GroupUsersManage,
    GroupUsersSet,
    PermissionCreate,
    PermissionListResponse,
    PermissionModulesResponse,
    PermissionResponse,
    PermissionTreeNode,
    PermissionUpdate,
    PermissionUsageResponse,
    SeedResponse,
    SyncResponse,
    UserCreate,
    UserGroupsDelta,
    UserGroupsSet,
    UserListResponse,
    UserResponse,
)

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.APP_NAME, description="基于组的权限管理服务", version=settings.APP_VERSION)

app.add_middleware(CORSMiddleware, allow_origins=settings.CORS_ORIGINS, allow_credentials=True, allow_methods=["*"], allow_headers=["*"])
app.add_middleware(RequestIdMiddleware)
register_exception_handlers(app)


@app.on_event("shutdown")
async def shutdown():
    close_redis()


@app.get("/")
async def root():
    return {"service": settings.APP_NAME, "status": "running"}


@app.get("/health")
async def health(db: Session = Depends(get_db)):
    """健康检查：数据库必须可用，Redis 不可用时只标记为降级"""
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except Exception:
        logger.exception("数据库健康检查失败")
        database = "unavailable"

    cache = "disabled"
    if settings.PERMISSION_CACHE_ENABLED:
        try:
            get_redis().ping()
            cache = "ok"
        except Exception as e:
            logger.warning("Redis 健康检查失败: %s", e)
            cache = "degraded"

    status = "healthy" if database == "ok" else "unhealthy"
    return {"status": status, "database": database, "cache": cache}


# ---------------------------------------------------------------------------
# 权限目录
# ---------------------------------------------------------------------------

@app.get("/api/v1/permissions", response_model=PermissionListResponse)
async def list_permissions(
    search: Optional[str] = None,
    is_active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    items, total = catalog.list_permissions(db, search=search, is_active=is_active, page=page, limit=limit)
    return {
        "total": total,
        "page": page,
        "limit": limit,
        "items": [catalog.serialize_permission(p) for p in items],
        "tree": catalog.build_tree(items),
    }


@app.get("/api/v1/permissions/tree", response_model=List[PermissionTreeNode])
async def get_permission_tree(db: Session = Depends(get_db)):
    """完整的权限树"""
    permissions, _ = catalog.list_permissions(db, page=1, limit=100000)
    return catalog.build_tree(permissions)


@app.get(
    "/api/v1/permissions/discover",
    response_model=DiscoveryResponse,
    dependencies=[Depends(require_permission("system.manage"))],
)
async def discover_permissions(request: Request):
    """列出路由上通过 require_permission 声明的权限编码"""
    discovered = discover_route_permissions(request.app.routes)
    return {"count": len(discovered), "permissions": discovered}


@app.get(
    "/api/v1/permissions/modules",
    response_model=PermissionModulesResponse,
    dependencies=[Depends(require_permission("system.manage"))],
)
async def get_permission_modules(request: Request):
    """按模块（编码第一段）分组的已发现权限"""
    return {"modules": catalog.group_by_module(discover_route_permissions(request.app.routes))}


@app.post(
    "/api/v1/permissions/sync",
    response_model=SyncResponse,
    dependencies=[Depends(require_permission("system.manage"))],
)
async def sync_permissions(
    request: Request,
    actor_id: Optional[str] = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    """把路由上发现的权限及其父权限写入目录"""
    return catalog.sync_permissions(db, discover_route_permissions(request.app.routes), actor_id=actor_id)


@app.post(
    "/api/v1/permissions/cleanup",
    response_model=CleanupResponse,
    dependencies=[Depends(require_permission("system.manage"))],
)
async def cleanup_permissions(
    request: Request,
    body: Optional[CleanupRequest] = None,
    actor_id: Optional[str] = Depends(get_actor_id),
    db: Session = Depends(get_db),
):
    """清理路由上已不再使用的自动发现权限，默认只试运行"""
    dry_run = body.dry_run if body is not None else True
    codes = [item["code"] for item in discover_route_permissions(request.app.routes)]
    return catalog.cleanup_unused_permissions(db, codes, dry_run=dry_run, actor_id=actor_id)


@app.post(
    "/api/v1/permissions/cache/clear",
    response_model=CacheClearResponse,
    dependencies=[Depends(require_permission("system.manage"))],
)
async def clear_permission_cache():
    """清空所有用户的有效权限缓存"""
    return {"cleared": clear_all_permissions_cache()}


@app.post(
    "/api/v1/permissions/seed",
    response_model=SeedResponse,
    dependencies=[Depends(require_permission("system.manage"))],
)
async def seed_permissions(actor_id: Optional[str] = Depends(get_actor_id), db: Session = Depends(get_db)):
    return {"created": catalog.seed_permissions(db, actor_id=actor_id)}


@app.post(
    "/api/v1/permissions",
    response_model=PermissionResponse,
    status_code=201,
    dependencies=[Depends(require_permission("system.manage"))],
)
async def create_permission(
    perm_data: PermissionCreate,
    actor_id: Optional[str] = Depends(get_actor_id),
    request_meta: Dict = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    permission = catalog.create_permission(
        db,
        code=perm_data.code,
        name=perm_data.name,
        description=perm_data.description,
        parent_code=perm_data.parent_code,
        is_active=perm_data.is_active,
        actor_id=actor_id,
        request_meta=request_meta,
    )
    return catalog.serialize_permission(permission)


@app.get("/api/v1/permissions/{code}", response_model=PermissionResponse)
async def get_permission(code: str, db: Session = Depends(get_db)):
    return catalog.serialize_permission(catalog.get_permission(db, code))


@app.get("/api/v1/permissions/{code}/usage", response_model=PermissionUsageResponse)
async def get_permission_usage(code: str, db: Session = Depends(get_db)):
    """引用该权限的组和子权限"""
    usage = catalog.get_permission_usage(db, code)
    return {"code": code, **usage}


@app.patch(
    "/api/v1/permissions/{code}",
    response_model=PermissionResponse,
    dependencies=[Depends(require_permission("system.manage"))],
)
async def update_permission(
    code: str,
    perm_data: PermissionUpdate,
    actor_id: Optional[str] = Depends(get_actor_id),
    request_meta: Dict = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    # 只提交请求中出现的字段，parent_code 显式传 null 表示提升为根权限
    fields = perm_data.model_dump(exclude_unset=True)
    permission = catalog.update_permission(db, code, fields, actor_id=actor_id, request_meta=request_meta)
    return catalog.serialize_permission(permission)


@app.delete(
    "/api/v1/permissions/{code}",
    status_code=204,
    dependencies=[Depends(require_permission("system.manage"))],
)
async def delete_permission(
    code: str,
    force: bool = False,
    actor_id: Optional[str] = Depends(get_actor_id),
    request_meta: Dict = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    catalog.delete_permission(db, code, force=force, actor_id=actor_id, request_meta=request_meta)
    return Response(status_code=204)


# ---------------------------------------------------------------------------
# 组
# ---------------------------------------------------------------------------

@app.get("/api/v1/groups", response_model=GroupListResponse)
async def list_groups(
    search: Optional[str] = None,
    is_active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    items, total = groups.list_groups(db, search=search, is_active=is_active, page=page, limit=limit)
    return {"total": total, "page": page, "limit": limit, "items": [groups.serialize_group(g) for g in items]}


@app.post(
    "/api/v1/groups",
    response_model=GroupResponse,
    status_code=201,
    dependencies=[Depends(require_permission("group.create"))],
)
async def create_group(
    group_data: GroupCreate,
    actor_id: Optional[str] = Depends(get_actor_id),
    request_meta: Dict = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    group = groups.create_group(
        db,
        code=group_data.code,
        name=group_data.name,
        description=group_data.description,
        is_active=group_data.is_active,
        actor_id=actor_id,
        request_meta=request_meta,
    )
    return groups.serialize_group(group, permissions=[])


@app.get("/api/v1/groups/{group_id}", response_model=GroupResponse)
async def get_group(group_id: str, db: Session = Depends(get_db)):
    group = groups.get_group(db, group_id)
    return groups.serialize_group(group, permissions=groups.get_group_permissions(db, group.id))


@app.patch(
    "/api/v1/groups/{group_id}",
    response_model=GroupResponse,
    dependencies=[Depends(require_permission("group.update"))],
)
async def update_group(
    group_id: str,
    group_data: GroupUpdate,
    actor_id: Optional[str] = Depends(get_actor_id),
    request_meta: Dict = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    fields = group_data.model_dump(exclude_unset=True)
    group = groups.update_group(db, group_id, fields, actor_id=actor_id, request_meta=request_meta)
    return groups.serialize_group(group)


@app.delete(
    "/api/v1/groups/{group_id}",
    status_code=204,
    dependencies=[Depends(require_permission("group.delete"))],
)
async def delete_group(
    group_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    request_meta: Dict = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    groups.delete_group(db, group_id, actor_id=actor_id, request_meta=request_meta)
    return Response(status_code=204)


@app.get("/api/v1/groups/{group_id}/permissions", response_model=List[str])
async def get_group_permissions(group_id: str, db: Session = Depends(get_db)):
    return sorted(groups.get_group_permissions(db, group_id))


@app.put(
    "/api/v1/groups/{group_id}/permissions",
    response_model=GroupPermissionsDelta,
    dependencies=[Depends(require_permission("group.assign_permissions"))],
)
async def set_group_permissions(
    group_id: str,
    body: GroupPermissionsSet,
    actor_id: Optional[str] = Depends(get_actor_id),
    request_meta: Dict = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    """整体替换组的权限集合"""
    return groups.set_group_permissions(
        db, group_id, body.permissions, actor_id=actor_id, request_meta=request_meta,
    )


@app.get("/api/v1/groups/{group_id}/users", response_model=List[str])
async def get_group_users(group_id: str, db: Session = Depends(get_db)):
    group = groups.get_group(db, group_id)
    return sorted(membership.get_group_user_ids(db, group.id))


@app.put(
    "/api/v1/groups/{group_id}/users",
    response_model=GroupUsersDelta,
    dependencies=[Depends(require_permission("system.groups.manage"))],
)
async def set_group_users(
    group_id: str,
    body: GroupUsersSet,
    actor_id: Optional[str] = Depends(get_actor_id),
    request_meta: Dict = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    """整体替换组的成员集合"""
    return membership.set_users_for_group(
        db, group_id, body.user_ids, actor_id=actor_id, request_meta=request_meta,
    )


@app.post(
    "/api/v1/groups/{group_id}/users",
    response_model=GroupUsersDelta,
    dependencies=[Depends(require_permission("system.groups.manage"))],
)
async def manage_group_users(
    group_id: str,
    body: GroupUsersManage,
    actor_id: Optional[str] = Depends(get_actor_id),
    request_meta: Dict = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    """增量加入/移出组成员"""
    return membership.manage_group_users(
        db, group_id,
        add_user_ids=body.add,
        remove_user_ids=body.remove,
        actor_id=actor_id,
        request_meta=request_meta,
    )


# ---------------------------------------------------------------------------
# 用户与成员关系
# ---------------------------------------------------------------------------

@app.get("/api/v1/users", response_model=UserListResponse)
async def list_users(
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
):
    items, total = membership.list_users(db, search=search, page=page, limit=limit)
    return {"total": total, "page": page, "limit": limit, "items": [membership.serialize_user(u) for u in items]}


@app.post(
    "/api/v1/users",
    response_model=UserResponse,
    status_code=201,
    dependencies=[Depends(require_permission("user.create"))],
)
async def create_user(
    user_data: UserCreate,
    actor_id: Optional[str] = Depends(get_actor_id),
    request_meta: Dict = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    user = membership.create_user(
        db,
        username=user_data.username,
        full_name=user_data.full_name,
        is_active=user_data.is_active,
        actor_id=actor_id,
        request_meta=request_meta,
    )
    return membership.serialize_user(user, group_ids=[])


@app.get("/api/v1/users/{user_id}", response_model=UserResponse)
async def get_user(user_id: str, db: Session = Depends(get_db)):
    user = membership.get_user(db, user_id)
    return membership.serialize_user(user, group_ids=membership.get_user_group_ids(db, user.id))


@app.delete(
    "/api/v1/users/{user_id}",
    status_code=204,
    dependencies=[Depends(require_permission("user.delete"))],
)
async def delete_user(
    user_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    request_meta: Dict = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    membership.delete_user(db, user_id, actor_id=actor_id, request_meta=request_meta)
    return Response(status_code=204)


@app.put(
    "/api/v1/users/{user_id}/groups",
    response_model=UserGroupsDelta,
    dependencies=[Depends(require_permission("user.update"))],
)
async def set_user_groups(
    user_id: str,
    body: UserGroupsSet,
    actor_id: Optional[str] = Depends(get_actor_id),
    request_meta: Dict = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    """整体替换用户所属的组"""
    return membership.set_groups_for_user(
        db, user_id, body.group_ids, actor_id=actor_id, request_meta=request_meta,
    )


@app.delete(
    "/api/v1/users/{user_id}/groups/{group_id}",
    status_code=204,
    dependencies=[Depends(require_permission("user.update"))],
)
async def remove_user_from_group(
    user_id: str,
    group_id: str,
    actor_id: Optional[str] = Depends(get_actor_id),
    request_meta: Dict = Depends(get_request_context),
    db: Session = Depends(get_db),
):
    """移出组（幂等，成员关系不存在也返回成功）"""
    membership.remove_user_from_group(db, user_id, group_id, actor_id=actor_id, request_meta=request_meta)
    return Response(status_code=204)


@app.get("/api/v1/users/{user_id}/permissions", response_model=EffectivePermissionsResponse)
async def get_user_permissions(user_id: str, db: Session = Depends(get_db)):
    """
    获取用户的有效权限

    未知用户返回空列表（默认拒绝），不返回 404
    """
    return {"user_id": user_id, "permissions": sorted(gate.get_effective_permissions(db, user_id))}


@app.post("/api/v1/users/{user_id}/check-permission", response_model=CheckPermissionResponse)
async def check_user_permission(
    user_id: str,
    body: CheckPermissionRequest,
    db: Session = Depends(get_db),
):
    """
    检查用户是否拥有指定权限

    Args:
        user_id: 用户ID
        body.permission: 单个权限编码
        body.permissions: 多个权限编码，配合 mode（any/all）

    Returns:
        {"has_permission": bool}，检查本身不会因未知用户等原因报错
    """
    if body.permission is not None:
        return {
            "user_id": user_id,
            "permission": body.permission,
            "has_permission": gate.check(db, user_id, body.permission),
        }

    if body.permissions is None:
        raise ValidationError("必须提供 permission 或 permissions", fields=["permission", "permissions"])

    checker = gate.check_any if body.mode == "any" else gate.check_all
    return {
        "user_id": user_id,
        "permissions": body.permissions,
        "mode": body.mode,
        "has_permission": checker(db, user_id, body.permissions),
    }


# ---------------------------------------------------------------------------
# 操作日志
# ---------------------------------------------------------------------------

@app.get(
    "/api/v1/activity-logs",
    response_model=ActivityLogListResponse,
    dependencies=[Depends(require_permission("audit.read"))],
)
async def list_activity_logs(
    user_id: Optional[str] = None,
    action: Optional[str] = None,
    resource: Optional[str] = None,
    resource_id: Optional[str] = None,
    status: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    """
    查询操作日志

    支持按操作人、操作类型、资源、状态、时间范围过滤，按创建时间倒序分页
    """
    logs, total = query_activity(
        db,
        user_id=user_id,
        action=action,
        resource=resource,
        resource_id=resource_id,
        status=status,
        start_date=start_date,
        end_date=end_date,
        search=search,
        page=page,
        page_size=page_size,
    )
    return {
        "total": total,
        "page": page,
        "page_size": page_size,
        "logs": [serialize_activity(log) for log in logs],
    }


@app.get(
    "/api/v1/activity-logs/recent",
    response_model=List[ActivityLogResponse],
    dependencies=[Depends(require_permission("audit.read"))],
)
async def list_recent_activity(limit: int = Query(10, ge=1, le=100), db: Session = Depends(get_db)):
    return [serialize_activity(log) for log in find_recent_activity(db, limit=limit)]


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8004)
