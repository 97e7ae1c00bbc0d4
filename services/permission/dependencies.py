"""
权限服务依赖注入

操作人通过 X-User-Id 请求头传入（由上游网关在认证后注入）。
require_permission 生成路由依赖，在 ENFORCE_ROUTE_PERMISSIONS 开启时通过授权检查入口校验操作人权限。
生成的依赖带有 permission_code 属性，discover_route_permissions 据此从路由表中发现权限编码。
"""
from typing import Any, Dict, Iterable, List, Optional

from fastapi import Depends, Header, HTTPException, Request
from fastapi.routing import APIRoute
from sqlalchemy.orm import Session

from shared.config import settings
from shared.database import get_db
from shared.utils.audit_log import get_request_meta
from services.permission import catalog, gate


def get_actor_id(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> Optional[str]:
    """读取操作人用户ID，未提供时返回 None"""
    return x_user_id or None


def get_request_context(request: Request) -> Dict[str, Optional[str]]:
    """提取写入操作日志的请求来源信息"""
    return get_request_meta(request)


def require_permission(permission_code: str):
    """
    生成校验操作人权限的依赖

    Usage:
        @app.post("/api/v1/groups", dependencies=[Depends(require_permission("group.create"))])
    """
    def dependency(
        actor_id: Optional[str] = Depends(get_actor_id),
        db: Session = Depends(get_db),
    ) -> Optional[str]:
        if not settings.ENFORCE_ROUTE_PERMISSIONS:
            return actor_id

        if not actor_id:
            raise HTTPException(status_code=401, detail="未认证：缺少 X-User-Id 请求头")

        if not gate.check(db, actor_id, permission_code):
            raise HTTPException(
                status_code=403,
                detail=f"无权限访问：需要 {permission_code} 权限",
            )
        return actor_id

    dependency.permission_code = permission_code
    return dependency


def _required_codes(dependant) -> Iterable[str]:
    for sub in dependant.dependencies:
        code = getattr(sub.call, "permission_code", None)
        if code:
            yield code
        yield from _required_codes(sub)


def discover_route_permissions(routes: Iterable[Any]) -> List[Dict[str, Any]]:
    """
    扫描路由表，收集 require_permission 声明的权限编码

    Args:
        routes: app.routes

    Returns:
        按编码排序的发现结果，每项的 sources 列出使用该权限的 "方法 路径"
    """
    sources: Dict[str, set] = {}
    for route in routes:
        if not isinstance(route, APIRoute):
            continue
        source = f"{','.join(sorted(route.methods))} {route.path}"
        for code in _required_codes(route.dependant):
            sources.setdefault(code, set()).add(source)
    return [catalog.describe_discovered(code, sources[code]) for code in sorted(sources)]
