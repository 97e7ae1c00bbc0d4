"""
Redis客户端管理

Redis 只用于缓存用户的有效权限集合，不是权限数据的来源。
连接设置了较短的超时，Redis 不可用时调用方应降级为直接查询数据库。
"""
import redis
from shared.config import settings

# 创建Redis连接池
redis_pool = redis.ConnectionPool.from_url(
    settings.REDIS_URL,
    decode_responses=True,
    max_connections=settings.REDIS_MAX_CONNECTIONS,
    socket_timeout=settings.REDIS_SOCKET_TIMEOUT,
    socket_connect_timeout=settings.REDIS_SOCKET_TIMEOUT,
)

# 创建Redis客户端
redis_client = redis.Redis(connection_pool=redis_pool)


def get_redis():
    """获取Redis客户端"""
    return redis_client


def close_redis():
    """关闭连接池（服务停止时调用）"""
    redis_pool.disconnect()
