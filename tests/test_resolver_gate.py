"""
有效权限解析与授权检查测试

覆盖：
- 多组权限并集
- 未激活的组和权限不生效
- 默认拒绝（未知用户、格式无效的ID、数据库异常）
- check_any / check_all 的空列表语义
- 权限缓存命中、写入、失效与 Redis 不可用时的降级
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import json
import uuid
from unittest.mock import MagicMock, patch

import pytest
import redis
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from shared.config import settings
from shared.database import Base
from services.permission import catalog, gate, groups, membership
from services.permission.cache import (
    PERMISSION_CACHE_PREFIX,
    clear_all_permissions_cache,
    get_cached_permissions,
    invalidate_users_permissions_cache,
    set_cached_permissions,
)
from services.permission.resolver import resolve

# 测试数据库
TEST_DATABASE_URL = "sqlite:///./test_resolver_gate.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_database():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def two_groups(db):
    """A={user.create,user.view}，B={user.view,group.view}，用户同时属于 A 和 B"""
    for code in ("user.create", "user.view", "group.view", "system.manage"):
        catalog.create_permission(db, code=code, name=code)
    group_a = groups.create_group(db, code="A", name="A")
    group_b = groups.create_group(db, code="B", name="B")
    groups.set_group_permissions(db, group_a.id, ["user.create", "user.view"])
    groups.set_group_permissions(db, group_b.id, ["user.view", "group.view"])
    user = membership.create_user(db, username="both")
    membership.set_groups_for_user(db, user.id, [group_a.id, group_b.id])
    return user, group_a, group_b


class TestResolve:

    def test_union_of_groups(self, db, two_groups):
        user, _, _ = two_groups

        assert resolve(db, user.id) == {"user.create", "user.view", "group.view"}

    def test_user_without_groups(self, db):
        user = membership.create_user(db, username="lonely")

        assert resolve(db, user.id) == set()

    def test_unknown_and_malformed_user(self, db):
        assert resolve(db, uuid.uuid4()) == set()
        assert resolve(db, "not-a-uuid") == set()

    def test_inactive_group_contributes_nothing(self, db, two_groups):
        user, group_a, _ = two_groups

        groups.update_group(db, group_a.id, {"is_active": False})

        assert resolve(db, user.id) == {"user.view", "group.view"}

    def test_inactive_permission_excluded(self, db, two_groups):
        user, _, _ = two_groups

        catalog.update_permission(db, "group.view", {"is_active": False})

        assert resolve(db, user.id) == {"user.create", "user.view"}

    def test_hierarchy_is_not_expanded(self, db):
        catalog.create_permission(db, code="system.manage", name="System")
        catalog.create_permission(db, code="system.users.manage", name="Users", parent_code="system.manage")
        group = groups.create_group(db, code="SYS", name="System")
        groups.set_group_permissions(db, group.id, ["system.manage"])
        user = membership.create_user(db, username="sys")
        membership.add_user_to_group(db, user.id, group.id)

        assert resolve(db, user.id) == {"system.manage"}


class TestCheck:

    def test_default_deny_for_unknown_user(self, db, two_groups):
        assert gate.check(db, uuid.uuid4(), "system.manage") is False
        assert gate.check(db, "garbage", "system.manage") is False
        assert gate.check(db, None, "system.manage") is False

    def test_check_granted_and_not_granted(self, db, two_groups):
        user, _, _ = two_groups

        assert gate.check(db, user.id, "user.create") is True
        assert gate.check(db, str(user.id), "group.view") is True
        assert gate.check(db, user.id, "system.manage") is False

    def test_check_any_and_all(self, db, two_groups):
        user, _, _ = two_groups

        assert gate.check_any(db, user.id, ["system.manage", "user.view"]) is True
        assert gate.check_any(db, user.id, ["system.manage"]) is False
        assert gate.check_all(db, user.id, ["user.create", "group.view"]) is True
        assert gate.check_all(db, user.id, ["user.create", "system.manage"]) is False

    def test_empty_lists(self, db, two_groups):
        user, _, _ = two_groups

        assert gate.check_any(db, user.id, []) is False
        assert gate.check_all(db, user.id, []) is True

    def test_database_failure_denies(self, db, two_groups):
        user, _, _ = two_groups

        with patch("services.permission.gate.resolve", side_effect=OperationalError("SELECT", {}, Exception("down"))):
            assert gate.check(db, user.id, "user.create") is False

    def test_membership_removal_takes_effect(self, db, two_groups):
        user, group_a, _ = two_groups

        membership.remove_user_from_group(db, user.id, group_a.id)

        assert gate.check(db, user.id, "user.create") is False
        assert gate.check(db, user.id, "user.view") is True


class TestPermissionCache:

    def test_cache_hit_skips_resolver(self, db):
        user_id = uuid.uuid4()
        mock_redis = MagicMock()
        mock_redis.get.return_value = json.dumps(["audit.read"])

        with patch.object(settings, "PERMISSION_CACHE_ENABLED", True), \
                patch("services.permission.cache.get_redis", return_value=mock_redis), \
                patch("services.permission.gate.resolve") as mock_resolve:
            assert gate.check(db, user_id, "audit.read") is True

        mock_redis.get.assert_called_once_with(f"{PERMISSION_CACHE_PREFIX}{user_id}")
        mock_resolve.assert_not_called()

    def test_cache_miss_resolves_and_stores(self, db, two_groups):
        user, _, _ = two_groups
        mock_redis = MagicMock()
        mock_redis.get.return_value = None

        with patch.object(settings, "PERMISSION_CACHE_ENABLED", True), \
                patch("services.permission.cache.get_redis", return_value=mock_redis):
            codes = gate.get_effective_permissions(db, str(user.id))

        assert codes == {"user.create", "user.view", "group.view"}
        mock_redis.setex.assert_called_once_with(
            f"{PERMISSION_CACHE_PREFIX}{user.id}",
            settings.PERMISSION_CACHE_TTL,
            json.dumps(["group.view", "user.create", "user.view"]),
        )

    def test_invalid_user_id_is_not_cached(self, db):
        mock_redis = MagicMock()

        with patch.object(settings, "PERMISSION_CACHE_ENABLED", True), \
                patch("services.permission.cache.get_redis", return_value=mock_redis):
            assert gate.get_effective_permissions(db, "not-a-uuid") == set()

        mock_redis.get.assert_not_called()
        mock_redis.setex.assert_not_called()

    def test_redis_down_falls_back_to_database(self, db, two_groups):
        user, _, _ = two_groups
        mock_redis = MagicMock()
        mock_redis.get.side_effect = redis.ConnectionError("refused")
        mock_redis.setex.side_effect = redis.ConnectionError("refused")

        with patch.object(settings, "PERMISSION_CACHE_ENABLED", True), \
                patch("services.permission.cache.get_redis", return_value=mock_redis):
            assert gate.check(db, user.id, "user.create") is True

    def test_corrupt_cache_entry_ignored(self):
        mock_redis = MagicMock()
        mock_redis.get.return_value = "{not json"

        with patch.object(settings, "PERMISSION_CACHE_ENABLED", True), \
                patch("services.permission.cache.get_redis", return_value=mock_redis):
            assert get_cached_permissions(uuid.uuid4()) is None

    def test_disabled_cache_never_touches_redis(self):
        mock_redis = MagicMock()

        with patch.object(settings, "PERMISSION_CACHE_ENABLED", False), \
                patch("services.permission.cache.get_redis", return_value=mock_redis):
            assert get_cached_permissions(uuid.uuid4()) is None
            set_cached_permissions(uuid.uuid4(), ["a"])
            invalidate_users_permissions_cache([uuid.uuid4()])

        mock_redis.get.assert_not_called()
        mock_redis.setex.assert_not_called()
        mock_redis.delete.assert_not_called()

    def test_invalidate_deletes_all_keys_at_once(self):
        mock_redis = MagicMock()
        first, second = uuid.uuid4(), uuid.uuid4()

        with patch.object(settings, "PERMISSION_CACHE_ENABLED", True), \
                patch("services.permission.cache.get_redis", return_value=mock_redis):
            invalidate_users_permissions_cache([first, str(first), second])

        args = mock_redis.delete.call_args[0]
        assert sorted(args) == sorted([f"{PERMISSION_CACHE_PREFIX}{first}", f"{PERMISSION_CACHE_PREFIX}{second}"])

    def test_clear_all_scans_in_batches(self):
        mock_redis = MagicMock()
        mock_redis.scan.side_effect = [
            (42, [f"{PERMISSION_CACHE_PREFIX}a", f"{PERMISSION_CACHE_PREFIX}b"]),
            (0, [f"{PERMISSION_CACHE_PREFIX}c"]),
        ]
        mock_redis.delete.side_effect = [2, 1]

        with patch.object(settings, "PERMISSION_CACHE_ENABLED", True), \
                patch("services.permission.cache.get_redis", return_value=mock_redis):
            assert clear_all_permissions_cache() == 3

        assert mock_redis.scan.call_count == 2
        mock_redis.scan.assert_any_call(cursor=0, match=f"{PERMISSION_CACHE_PREFIX}*", count=100)

    def test_clear_all_with_redis_down(self):
        mock_redis = MagicMock()
        mock_redis.scan.side_effect = redis.ConnectionError("refused")

        with patch.object(settings, "PERMISSION_CACHE_ENABLED", True), \
                patch("services.permission.cache.get_redis", return_value=mock_redis):
            assert clear_all_permissions_cache() == 0

        mock_redis.delete.assert_not_called()

    def test_group_permission_change_invalidates_members(self, db, two_groups):
        user, group_a, _ = two_groups
        mock_redis = MagicMock()

        with patch.object(settings, "PERMISSION_CACHE_ENABLED", True), \
                patch("services.permission.cache.get_redis", return_value=mock_redis):
            groups.set_group_permissions(db, group_a.id, ["user.create"])

        mock_redis.delete.assert_called_once_with(f"{PERMISSION_CACHE_PREFIX}{user.id}")

    def test_unchanged_group_permissions_do_not_invalidate(self, db, two_groups):
        _, group_a, _ = two_groups
        mock_redis = MagicMock()

        with patch.object(settings, "PERMISSION_CACHE_ENABLED", True), \
                patch("services.permission.cache.get_redis", return_value=mock_redis):
            groups.set_group_permissions(db, group_a.id, ["user.create", "user.view"])

        mock_redis.delete.assert_not_called()


class TestEndToEnd:

    def test_admin_group_lifecycle(self, db):
        catalog.create_permission(db, code="user.create", name="Create User")
        catalog.create_permission(db, code="user.update", name="Update User")
        admin = groups.create_group(db, code="ADMIN", name="Administrators")
        groups.set_group_permissions(db, admin.id, ["user.create", "user.update"])
        u1 = membership.create_user(db, username="u1")
        membership.add_user_to_group(db, u1.id, admin.id)

        assert gate.check(db, u1.id, "user.update") is True
        assert gate.check(db, u1.id, "group.delete") is False

        groups.delete_group(db, admin.id)

        assert membership.get_user_group_ids(db, u1.id) == set()
        assert gate.check(db, u1.id, "user.update") is False
