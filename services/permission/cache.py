"""
有效权限缓存模块

以 Redis 缓存每个用户解析后的有效权限集合，减少授权检查时的数据库查询。

Key 模式:
  - user_permissions:{user_id}   String   JSON 数组，已排序的权限编码

失效策略（在变更提交之后执行）:
  - 用户组成员变化         -> 失效受影响的用户
  - 组的权限集合变化、组激活状态变化、组删除 -> 失效该组所有成员
  - 权限激活状态变化、权限强制删除 -> 失效所有通过组获得该权限的用户
  - 手动清空                 -> 删除全部 user_permissions:* key

缓存最长陈旧时间为 PERMISSION_CACHE_TTL 秒：即使某次失效因 Redis 故障丢失，
过期后也会重新从数据库解析。Redis 不可用时读写均降级跳过，授权检查直接查询数据库。
"""
import json
import logging
from typing import Iterable, Optional, Set, Any

import redis
from sqlalchemy.orm import Session

from shared.config import settings
from shared.models.permission import GroupPermission, UserGroup
from shared.redis_client import get_redis

logger = logging.getLogger(__name__)

PERMISSION_CACHE_PREFIX = "user_permissions:"


def _cache_key(user_id: Any) -> str:
    return f"{PERMISSION_CACHE_PREFIX}{user_id}"


# ---------------------------------------------------------------------------
# 读写
# ---------------------------------------------------------------------------

def get_cached_permissions(user_id: Any) -> Optional[Set[str]]:
    """
    读取用户的有效权限缓存。

    Args:
        user_id: 用户ID

    Returns:
        权限编码集合；缓存未命中、缓存关闭或 Redis 不可用时返回 None
    """
    if not settings.PERMISSION_CACHE_ENABLED:
        return None

    try:
        cached = get_redis().get(_cache_key(user_id))
    except redis.RedisError as e:
        logger.warning("Redis 不可用，跳过权限缓存读取: %s", str(e))
        return None

    if cached is None:
        return None

    try:
        return set(json.loads(cached))
    except (ValueError, TypeError):
        logger.warning("权限缓存内容损坏，已忽略: user_id=%s", user_id)
        return None


def set_cached_permissions(user_id: Any, codes: Iterable[str]) -> None:
    """
    写入用户的有效权限缓存（TTL = PERMISSION_CACHE_TTL）。

    Args:
        user_id: 用户ID
        codes: 权限编码集合
    """
    if not settings.PERMISSION_CACHE_ENABLED:
        return

    try:
        get_redis().setex(
            _cache_key(user_id),
            settings.PERMISSION_CACHE_TTL,
            json.dumps(sorted(codes)),
        )
    except redis.RedisError as e:
        logger.warning("Redis 不可用，跳过权限缓存写入: %s", str(e))


# ---------------------------------------------------------------------------
# 失效
# ---------------------------------------------------------------------------

def invalidate_users_permissions_cache(user_ids: Iterable[Any]) -> None:
    """
    使一组用户的权限缓存失效。

    Args:
        user_ids: 用户ID集合
    """
    if not settings.PERMISSION_CACHE_ENABLED:
        return

    keys = [_cache_key(user_id) for user_id in set(str(u) for u in user_ids)]
    if not keys:
        return

    try:
        get_redis().delete(*keys)
    except redis.RedisError as e:
        logger.warning("Redis 不可用，权限缓存失效失败（最长陈旧 %s 秒）: %s", settings.PERMISSION_CACHE_TTL, str(e))


def invalidate_user_permissions_cache(user_id: Any) -> None:
    """使单个用户的权限缓存失效"""
    invalidate_users_permissions_cache([user_id])


def collect_group_member_ids(db: Session, group_id: Any) -> Set[str]:
    """
    查询组的所有成员ID，用于组变更后的缓存失效。

    组删除时需在删除前调用。
    """
    rows = db.query(UserGroup.user_id).filter(UserGroup.group_id == group_id).all()
    return {str(row.user_id) for row in rows}


def collect_permission_holder_ids(db: Session, code: str) -> Set[str]:
    """
    查询通过任意组获得指定权限的用户ID，用于权限变更后的缓存失效。
    """
    rows = (
        db.query(UserGroup.user_id)
        .join(GroupPermission, GroupPermission.group_id == UserGroup.group_id)
        .filter(GroupPermission.permission_code == code)
        .distinct()
        .all()
    )
    return {str(row.user_id) for row in rows}


def clear_all_permissions_cache() -> int:
    """
    清空所有用户的权限缓存。

    使用 SCAN 匹配 user_permissions:* 并分批删除，不使用会阻塞 Redis 的 KEYS。

    Returns:
        删除的 key 数量；缓存关闭或 Redis 不可用时返回 0
    """
    if not settings.PERMISSION_CACHE_ENABLED:
        return 0

    deleted = 0
    try:
        client = get_redis()
        cursor = 0
        while True:
            cursor, keys = client.scan(cursor=cursor, match=f"{PERMISSION_CACHE_PREFIX}*", count=100)
            if keys:
                deleted += client.delete(*keys)
            if cursor == 0:
                break
    except redis.RedisError as e:
        logger.warning("Redis 不可用，权限缓存清空失败（最长陈旧 %s 秒）: %s", settings.PERMISSION_CACHE_TTL, str(e))

    logger.info("已清空权限缓存: %d 个 key", deleted)
    return deleted
