"""
操作日志工具模块

记录权限目录、组和成员关系上的每一次变更，并提供分页查询。

操作日志是尽力而为的：触发它的变更已经提交，日志写入失败不会回滚变更，
也不会向调用方抛出异常，失败以 ERROR 级别写入 "audit" 日志通道。
"""
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple

from fastapi import Request
from sqlalchemy import or_, func
from sqlalchemy.orm import Session

from shared.models.system import (
    ActivityLog,
    ACTIVITY_ACTIONS,
    ACTIVITY_RESOURCES,
    ACTIVITY_STATUSES,
)
from shared.utils.validators import parse_uuid

# 运维告警通道：审计写入失败
audit_logger = logging.getLogger("audit")


def get_client_ip(request: Request) -> Optional[str]:
    """
    获取客户端IP地址

    Args:
        request: FastAPI请求对象

    Returns:
        客户端IP地址
    """
    # 优先从X-Forwarded-For头获取（处理代理情况）
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # X-Forwarded-For可能包含多个IP，取第一个
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host

    return None


def get_request_meta(request: Request) -> Dict[str, Optional[str]]:
    """
    提取请求来源信息（IP、用户代理、方法、路径）

    Args:
        request: FastAPI请求对象

    Returns:
        可直接传给 record_activity 的 request_meta 字典
    """
    return {
        "ip_address": get_client_ip(request),
        "user_agent": request.headers.get("User-Agent"),
        "method": request.method,
        "path": request.url.path,
    }


def record_activity(
    db: Session,
    actor_id: Optional[Any],
    action: str,
    resource: str,
    resource_id: Optional[Any] = None,
    details: Optional[Dict[str, Any]] = None,
    status: str = "success",
    request_meta: Optional[Dict[str, Optional[str]]] = None,
) -> Optional[ActivityLog]:
    """
    追加一条操作日志

    在调用方的变更提交之后调用，使用独立的提交。

    Args:
        db: 数据库会话
        actor_id: 操作人用户ID，系统发起的操作为None
        action: 操作类型（create, update, delete, assign, unassign, view, login, logout）
        resource: 资源类型（permission, group, user, menu, profile, system）
        resource_id: 资源标识
        details: 变更详情（JSON可序列化）
        status: success 或 error
        request_meta: 请求来源信息，见 get_request_meta

    Returns:
        写入的日志记录；写入失败时返回None
    """
    if action not in ACTIVITY_ACTIONS or resource not in ACTIVITY_RESOURCES or status not in ACTIVITY_STATUSES:
        audit_logger.error(
            "操作日志参数无效，已丢弃: action=%s resource=%s status=%s resource_id=%s",
            action, resource, status, resource_id,
        )
        return None

    meta = request_meta or {}
    try:
        activity = ActivityLog(
            user_id=parse_uuid(actor_id) if actor_id is not None else None,
            action=action,
            resource=resource,
            resource_id=str(resource_id) if resource_id is not None else None,
            details=details,
            status=status,
            ip_address=meta.get("ip_address"),
            user_agent=meta.get("user_agent"),
            method=meta.get("method"),
            path=meta.get("path"),
        )
        db.add(activity)
        db.commit()
        return activity
    except Exception as e:
        db.rollback()
        audit_logger.error(
            "操作日志写入失败: action=%s resource=%s resource_id=%s error=%s",
            action, resource, resource_id, str(e),
        )
        return None


def query_activity(
    db: Session,
    user_id: Optional[Any] = None,
    action: Optional[str] = None,
    resource: Optional[str] = None,
    resource_id: Optional[str] = None,
    status: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    search: Optional[str] = None,
    page: int = 1,
    page_size: int = 20,
) -> Tuple[List[ActivityLog], int]:
    """
    分页查询操作日志，按创建时间倒序

    Args:
        db: 数据库会话
        user_id: 操作人过滤
        action: 操作类型过滤
        resource: 资源类型过滤
        resource_id: 资源标识过滤
        status: 状态过滤
        start_date: 开始时间（含）
        end_date: 结束时间（含）
        search: 在操作类型和资源类型上做不区分大小写的模糊匹配
        page: 页码（从1开始）
        page_size: 每页数量

    Returns:
        (当前页日志, 总数)
    """
    query = db.query(ActivityLog)

    if user_id is not None:
        user_uuid = parse_uuid(user_id)
        if user_uuid is None:
            return [], 0
        query = query.filter(ActivityLog.user_id == user_uuid)

    if action:
        query = query.filter(ActivityLog.action == action)

    if resource:
        query = query.filter(ActivityLog.resource == resource)

    if resource_id:
        query = query.filter(ActivityLog.resource_id == str(resource_id))

    if status:
        query = query.filter(ActivityLog.status == status)

    if start_date:
        query = query.filter(ActivityLog.created_at >= start_date)

    if end_date:
        query = query.filter(ActivityLog.created_at <= end_date)

    if search:
        term = search.strip().lower()
        query = query.filter(or_(
            func.lower(ActivityLog.action).contains(term, autoescape=True),
            func.lower(ActivityLog.resource).contains(term, autoescape=True),
        ))

    total = query.count()

    page = max(page, 1)
    page_size = max(page_size, 1)
    logs = (
        query.order_by(ActivityLog.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    return logs, total


def query_user_activity(db: Session, user_id: Any, **filters: Any) -> Tuple[List[ActivityLog], int]:
    """查询某个用户作为操作人的日志"""
    return query_activity(db, user_id=user_id, **filters)


def find_recent_activity(db: Session, limit: int = 10) -> List[ActivityLog]:
    """获取最近的操作日志（供实时动态展示）"""
    return (
        db.query(ActivityLog)
        .order_by(ActivityLog.created_at.desc())
        .limit(max(limit, 1))
        .all()
    )


def serialize_activity(log: ActivityLog) -> Dict[str, Any]:
    """将日志记录转换为可JSON序列化的字典"""
    return {
        "id": str(log.id),
        "user_id": str(log.user_id) if log.user_id else None,
        "action": log.action,
        "resource": log.resource,
        "resource_id": log.resource_id,
        "details": log.details,
        "status": log.status,
        "ip_address": str(log.ip_address) if log.ip_address else None,
        "user_agent": log.user_agent,
        "method": log.method,
        "path": log.path,
        "created_at": log.created_at,
    }