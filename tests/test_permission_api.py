"""
权限服务 HTTP 接口测试

覆盖：
- 端到端场景：创建权限和 ADMIN 组、分配成员、检查权限、删除组
- 统一错误格式（error_code / message / details / request_id）
- X-User-Id 操作人权限校验
- 操作日志查询接口
- 路由权限发现、同步、清理与缓存清空
"""
import sys
import os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import uuid
from unittest.mock import MagicMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from shared.config import settings
from shared.database import Base, get_db
from services.permission.main import app

# 测试数据库
TEST_DATABASE_URL = "sqlite:///./test_permission_api.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def override_get_db():
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


app.dependency_overrides[get_db] = override_get_db

client = TestClient(app)


@pytest.fixture(autouse=True)
def setup_database():
    """每个测试前重置数据库"""
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


def _create_permission(code, parent_code=None, headers=None):
    response = client.post(
        "/api/v1/permissions",
        json={"code": code, "name": code, "parent_code": parent_code},
        headers=headers or {},
    )
    assert response.status_code == 201, response.text
    return response.json()


def _create_group(code, headers=None):
    response = client.post("/api/v1/groups", json={"code": code, "name": code}, headers=headers or {})
    assert response.status_code == 201, response.text
    return response.json()["id"]


def _create_user(username, headers=None):
    response = client.post("/api/v1/users", json={"username": username}, headers=headers or {})
    assert response.status_code == 201, response.text
    return response.json()["id"]


def _check(user_id, code):
    response = client.post(f"/api/v1/users/{user_id}/check-permission", json={"permission": code})
    assert response.status_code == 200
    return response.json()["has_permission"]


class TestEndToEnd:

    def test_admin_group_scenario(self):
        _create_permission("user.create")
        _create_permission("user.update")
        group_id = _create_group("ADMIN")

        response = client.put(
            f"/api/v1/groups/{group_id}/permissions",
            json={"permissions": ["user.create", "user.update"]},
        )
        assert response.status_code == 200
        assert response.json()["added"] == ["user.create", "user.update"]

        u1 = _create_user("u1")
        response = client.put(f"/api/v1/users/{u1}/groups", json={"group_ids": [group_id]})
        assert response.status_code == 200

        assert _check(u1, "user.update") is True
        assert _check(u1, "group.delete") is False

        response = client.delete(f"/api/v1/groups/{group_id}")
        assert response.status_code == 204

        assert client.get(f"/api/v1/users/{u1}").json()["group_ids"] == []
        assert _check(u1, "user.update") is False

    def test_effective_permissions_and_multi_check(self):
        _create_permission("user.read")
        _create_permission("audit.read")
        group_id = _create_group("AUDITORS")
        client.put(f"/api/v1/groups/{group_id}/permissions", json={"permissions": ["audit.read"]})
        user_id = _create_user("auditor")
        client.post(f"/api/v1/groups/{group_id}/users", json={"add": [user_id]})

        response = client.get(f"/api/v1/users/{user_id}/permissions")
        assert response.json()["permissions"] == ["audit.read"]

        response = client.post(
            f"/api/v1/users/{user_id}/check-permission",
            json={"permissions": ["audit.read", "user.read"], "mode": "any"},
        )
        assert response.json()["has_permission"] is True

        response = client.post(
            f"/api/v1/users/{user_id}/check-permission",
            json={"permissions": ["audit.read", "user.read"], "mode": "all"},
        )
        assert response.json()["has_permission"] is False

    def test_check_for_unknown_user_is_false(self):
        assert _check(str(uuid.uuid4()), "system.manage") is False
        assert _check("not-a-uuid", "system.manage") is False

    def test_remove_membership_is_idempotent(self):
        group_id = _create_group("G1")
        user_id = _create_user("alice")

        assert client.delete(f"/api/v1/users/{user_id}/groups/{group_id}").status_code == 204
        assert client.delete(f"/api/v1/users/{user_id}/groups/{group_id}").status_code == 204


class TestPermissionRoutes:

    def test_list_includes_tree(self):
        _create_permission("system.manage")
        _create_permission("system.users.manage", parent_code="system.manage")

        data = client.get("/api/v1/permissions").json()
        assert data["total"] == 2
        assert [node["code"] for node in data["tree"]] == ["system.manage"]
        assert data["tree"][0]["children"][0]["code"] == "system.users.manage"

        tree = client.get("/api/v1/permissions/tree").json()
        assert tree == data["tree"]

    def test_patch_reparent_and_promote(self):
        _create_permission("a")
        _create_permission("b")

        response = client.patch("/api/v1/permissions/b", json={"parent_code": "a"})
        assert response.json()["parent_code"] == "a"

        response = client.patch("/api/v1/permissions/b", json={"parent_code": None})
        assert response.json()["parent_code"] is None

    def test_seed(self):
        response = client.post("/api/v1/permissions/seed")
        assert response.status_code == 200
        assert "dashboard.view" in response.json()["created"]
        assert client.post("/api/v1/permissions/seed").json()["created"] == []

    def test_force_delete(self):
        _create_permission("user.read")
        group_id = _create_group("READERS")
        client.put(f"/api/v1/groups/{group_id}/permissions", json={"permissions": ["user.read"]})

        assert client.get("/api/v1/permissions/user.read/usage").json()["groups"] == ["READERS"]
        assert client.delete("/api/v1/permissions/user.read", params={"force": True}).status_code == 204
        assert client.get(f"/api/v1/groups/{group_id}/permissions").json() == []


class TestErrorFormat:

    def test_duplicate_code(self):
        _create_permission("user.read")

        response = client.post("/api/v1/permissions", json={"code": "user.read", "name": "again"})

        assert response.status_code == 409
        body = response.json()
        assert body["error_code"] == "duplicate_code"
        assert body["details"]["value"] == "user.read"
        assert body["request_id"] == response.headers["X-Request-Id"]

    def test_in_use_lists_groups(self):
        _create_permission("user.read")
        group_id = _create_group("READERS")
        client.put(f"/api/v1/groups/{group_id}/permissions", json={"permissions": ["user.read"]})

        response = client.delete("/api/v1/permissions/user.read")

        assert response.status_code == 409
        assert response.json()["error_code"] == "in_use"
        assert response.json()["details"]["groups"] == ["READERS"]
        assert client.get(f"/api/v1/groups/{group_id}/permissions").json() == ["user.read"]

    def test_unknown_permission_in_assignment(self):
        group_id = _create_group("G1")

        response = client.put(f"/api/v1/groups/{group_id}/permissions", json={"permissions": ["nope"]})

        assert response.status_code == 422
        assert response.json()["error_code"] == "unknown_permission"
        assert response.json()["details"]["missing"] == ["nope"]

    def test_invalid_parent(self):
        response = client.post("/api/v1/permissions", json={"code": "a.b", "name": "x", "parent_code": "a"})

        assert response.status_code == 422
        assert response.json()["error_code"] == "invalid_parent"

    def test_null_is_active_on_permission_patch(self):
        _create_permission("a.b")

        response = client.patch("/api/v1/permissions/a.b", json={"is_active": None})

        assert response.status_code == 422
        assert response.json()["error_code"] == "validation_error"
        assert response.json()["details"]["field"] == "is_active"
        assert client.get("/api/v1/permissions/a.b").json()["is_active"] is True

    def test_null_fields_on_group_patch(self):
        group_id = _create_group("G1")

        for field in ("is_active", "name"):
            response = client.patch(f"/api/v1/groups/{group_id}", json={field: None})

            assert response.status_code == 422
            assert response.json()["error_code"] == "validation_error"
            assert response.json()["details"]["field"] == field

    def test_empty_name_on_create(self):
        for path, body in (
            ("/api/v1/permissions", {"code": "a.b", "name": ""}),
            ("/api/v1/groups", {"code": "G1", "name": ""}),
        ):
            response = client.post(path, json=body)

            assert response.status_code == 422
            assert "name" in response.json()["details"]["fields"]

    def test_immutable_group_code(self):
        group_id = _create_group("G1")

        response = client.patch(f"/api/v1/groups/{group_id}", json={"code": "G2"})

        assert response.status_code == 422
        assert response.json()["error_code"] == "immutable_field"

    def test_not_found(self):
        response = client.get(f"/api/v1/groups/{uuid.uuid4()}")

        assert response.status_code == 404
        assert response.json()["error_code"] == "not_found"

    def test_request_validation(self):
        response = client.post("/api/v1/permissions", json={"code": "a"})

        assert response.status_code == 422
        assert response.json()["error_code"] == "validation_error"
        assert "name" in response.json()["details"]["fields"]

    def test_check_without_codes(self):
        user_id = _create_user("alice")

        response = client.post(f"/api/v1/users/{user_id}/check-permission", json={})

        assert response.status_code == 422


class TestRoutePermissions:

    @pytest.fixture
    def admin_id(self):
        """关闭校验时初始化权限和管理员，然后在测试中开启校验"""
        client.post("/api/v1/permissions/seed")
        group_id = _create_group("ADMIN")
        codes = [item["code"] for item in client.get("/api/v1/permissions", params={"limit": 500}).json()["items"]]
        client.put(f"/api/v1/groups/{group_id}/permissions", json={"permissions": codes})
        user_id = _create_user("admin")
        client.put(f"/api/v1/users/{user_id}/groups", json={"group_ids": [group_id]})
        return user_id

    def test_missing_actor(self, admin_id):
        with patch.object(settings, "ENFORCE_ROUTE_PERMISSIONS", True):
            response = client.post("/api/v1/groups", json={"code": "G1", "name": "G1"})

        assert response.status_code == 401
        assert response.json()["error_code"] == "unauthenticated"

    def test_actor_without_permission(self, admin_id):
        plain = _create_user("plain")

        with patch.object(settings, "ENFORCE_ROUTE_PERMISSIONS", True):
            response = client.post(
                "/api/v1/groups", json={"code": "G1", "name": "G1"}, headers={"X-User-Id": plain},
            )

        assert response.status_code == 403
        assert response.json()["error_code"] == "forbidden"

    def test_admin_allowed_and_audited(self, admin_id):
        with patch.object(settings, "ENFORCE_ROUTE_PERMISSIONS", True):
            response = client.post(
                "/api/v1/groups", json={"code": "G1", "name": "G1"}, headers={"X-User-Id": admin_id},
            )
            assert response.status_code == 201

            logs = client.get(
                "/api/v1/activity-logs",
                params={"user_id": admin_id, "resource": "group", "action": "create"},
                headers={"X-User-Id": admin_id},
            ).json()

        assert logs["total"] == 1
        assert logs["page"] == 1
        assert logs["logs"][0]["resource_id"] == response.json()["id"]
        assert logs["logs"][0]["path"] == "/api/v1/groups"


class TestActivityLogRoutes:

    def test_recent_activity(self):
        _create_permission("user.read")
        _create_group("G1")

        recent = client.get("/api/v1/activity-logs/recent", params={"limit": 1}).json()

        assert len(recent) == 1
        assert recent[0]["resource"] == "group"

    def test_paginated_query(self):
        for code in ("a", "b", "c"):
            _create_permission(code)

        data = client.get("/api/v1/activity-logs", params={"resource": "permission", "page_size": 2}).json()

        assert data["total"] == 3
        assert data["page_size"] == 2
        assert len(data["logs"]) == 2

    def test_health(self):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["database"] == "ok"
        assert response.json()["cache"] == "disabled"


class TestPermissionDiscoveryRoutes:

    def test_discover_lists_route_guards(self):
        data = client.get("/api/v1/permissions/discover").json()

        by_code = {item["code"]: item for item in data["permissions"]}
        assert data["count"] == len(by_code)
        assert "POST /api/v1/groups" in by_code["group.create"]["sources"]
        assert "POST /api/v1/permissions/sync" in by_code["system.manage"]["sources"]
        assert by_code["system.groups.manage"]["parent_code"] == "system.groups"
        assert "dashboard.view" not in by_code

    def test_modules(self):
        modules = client.get("/api/v1/permissions/modules").json()["modules"]

        assert [m["name"] for m in modules] == ["audit", "group", "system", "user"]
        assert modules[0]["display_name"] == "Audit & Logs"

    def test_sync_creates_guard_codes(self):
        result = client.post("/api/v1/permissions/sync").json()

        assert "group.create" in result["created"]
        assert "group" in result["created"]
        assert result["existing"] == 0
        assert client.get("/api/v1/permissions/group.create").json()["parent_code"] == "group"

        again = client.post("/api/v1/permissions/sync").json()
        assert again["created"] == []
        assert again["existing"] == again["discovered"]

    def test_cleanup_defaults_to_dry_run(self):
        client.post(
            "/api/v1/permissions",
            json={"code": "legacy.export", "name": "Export", "description": "Export legacy (Auto-discovered from: GET /old)"},
        )

        dry = client.post("/api/v1/permissions/cleanup").json()
        assert dry["dry_run"] is True
        assert dry["candidates"] == ["legacy.export"]
        assert client.get("/api/v1/permissions/legacy.export").status_code == 200

        real = client.post("/api/v1/permissions/cleanup", json={"dry_run": False}).json()
        assert real["removed"] == ["legacy.export"]
        assert client.get("/api/v1/permissions/legacy.export").status_code == 404

    def test_clear_cache(self):
        assert client.post("/api/v1/permissions/cache/clear").json() == {"cleared": 0}

        mock_redis = MagicMock()
        mock_redis.scan.return_value = (0, ["user_permissions:a", "user_permissions:b"])
        mock_redis.delete.return_value = 2
        with patch.object(settings, "PERMISSION_CACHE_ENABLED", True), \
                patch("services.permission.cache.get_redis", return_value=mock_redis):
            response = client.post("/api/v1/permissions/cache/clear")

        assert response.json() == {"cleared": 2}

    def test_discovery_requires_system_manage(self):
        plain = _create_user("plain")

        with patch.object(settings, "ENFORCE_ROUTE_PERMISSIONS", True):
            response = client.get("/api/v1/permissions/discover", headers={"X-User-Id": plain})

        assert response.status_code == 403
