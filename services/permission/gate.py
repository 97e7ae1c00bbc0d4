"""
授权检查入口

应用中的所有访问决策都只通过本模块做出，其他模块不得为授权目的直接读取组或成员关系。

默认拒绝：只有权限编码在用户的有效权限集合中才返回 True。
任何解析失败（未知用户、ID格式无效、数据库异常）都按空集合处理，返回 False，
授权检查永远不会因此让调用方崩溃。返回 False 是正常结果，不记录为错误。

有效权限通过 services.permission.cache 缓存，最长陈旧 PERMISSION_CACHE_TTL 秒，
相关变更提交后会主动失效。
"""
import logging
from typing import Any, Iterable, Set

from sqlalchemy.orm import Session

from shared.utils.validators import parse_uuid
from services.permission.cache import get_cached_permissions, set_cached_permissions
from services.permission.resolver import resolve

logger = logging.getLogger(__name__)


def get_effective_permissions(db: Session, user_id: Any) -> Set[str]:
    """
    获取用户的有效权限（优先读缓存）

    Args:
        db: 数据库会话
        user_id: 用户ID

    Returns:
        权限编码集合
    """
    user_uuid = parse_uuid(user_id)
    if user_uuid is None:
        return set()

    cached = get_cached_permissions(user_uuid)
    if cached is not None:
        return cached

    codes = resolve(db, user_uuid)
    set_cached_permissions(user_uuid, codes)
    return codes


def _safe_effective_permissions(db: Session, user_id: Any) -> Set[str]:
    try:
        return get_effective_permissions(db, user_id)
    except Exception:
        logger.exception("有效权限解析失败，按无权限处理: user_id=%s", user_id)
        try:
            db.rollback()
        except Exception:
            logger.exception("解析失败后回滚会话失败")
        return set()


def check(db: Session, user_id: Any, required_code: str) -> bool:
    """
    检查用户是否拥有指定权限

    Args:
        db: 数据库会话
        user_id: 用户ID
        required_code: 所需权限编码

    Returns:
        是否拥有该权限，任何失败都返回 False
    """
    return required_code in _safe_effective_permissions(db, user_id)


def check_any(db: Session, user_id: Any, codes: Iterable[str]) -> bool:
    """检查用户是否拥有任意一个权限，空列表返回 False"""
    codes = list(codes)
    if not codes:
        return False
    effective = _safe_effective_permissions(db, user_id)
    return any(code in effective for code in codes)


def check_all(db: Session, user_id: Any, codes: Iterable[str]) -> bool:
    """检查用户是否拥有全部权限，空列表返回 True"""
    codes = list(codes)
    if not codes:
        return True
    effective = _safe_effective_permissions(db, user_id)
    return all(code in effective for code in codes)
