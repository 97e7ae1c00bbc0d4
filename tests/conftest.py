"""
Pytest配置文件
"""
import os
import threading

# 必须在导入 shared.config 之前设置，测试默认使用 SQLite 且不依赖 Redis
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_rbac.db")
os.environ.setdefault("PERMISSION_CACHE_ENABLED", "false")
os.environ.setdefault("ENFORCE_ROUTE_PERMISSIONS", "false")

import pytest
from hypothesis import settings, HealthCheck
from sqlalchemy import event
from sqlalchemy.orm import Session

# 配置Hypothesis
settings.register_profile(
    "default",
    max_examples=100,  # 每个属性测试至少100次迭代
    deadline=None,  # 禁用超时限制
    suppress_health_check=[HealthCheck.too_slow, HealthCheck.function_scoped_fixture]
)
settings.load_profile("default")


class RowLocks:
    """
    用进程内锁模拟数据库行锁，锁一直持有到会话提交或回滚

    SQLite 不支持 SELECT ... FOR UPDATE，并发测试通过包装加锁函数来获得同样的互斥语义。
    """

    def __init__(self):
        self._guard = threading.Lock()
        self._locks = {}

    def acquire(self, session, keys):
        held = session.info.setdefault("row_locks", {})
        for key in sorted(keys):
            if key in held:
                continue
            with self._guard:
                lock = self._locks.setdefault(key, threading.Lock())
            lock.acquire()
            held[key] = lock

    def release(self, session, *args):
        for lock in session.info.pop("row_locks", {}).values():
            lock.release()


@pytest.fixture
def row_locks():
    locks = RowLocks()
    event.listen(Session, "after_commit", locks.release)
    event.listen(Session, "after_soft_rollback", locks.release)
    yield locks
    event.remove(Session, "after_commit", locks.release)
    event.remove(Session, "after_soft_rollback", locks.release)


def _run_concurrently(session_factory, *operations):
    """
    在各自的线程和会话中同时执行 operations

    Returns:
        与 operations 一一对应的结果，抛出异常的操作对应该异常
    """
    barrier = threading.Barrier(len(operations))
    outcomes = [None] * len(operations)

    def worker(index, operation):
        session = session_factory()
        try:
            barrier.wait()
            outcomes[index] = operation(session)
        except Exception as e:
            outcomes[index] = e
        finally:
            session.close()

    threads = [threading.Thread(target=worker, args=(i, op)) for i, op in enumerate(operations)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)
    return outcomes


@pytest.fixture
def run_concurrently():
    return _run_concurrently
