"""
权限服务请求/响应模型
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# 权限
# ---------------------------------------------------------------------------

class PermissionCreate(BaseModel):
    code: str
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    parent_code: Optional[str] = None
    is_active: bool = True


class PermissionUpdate(BaseModel):
    code: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    parent_code: Optional[str] = None
    is_active: Optional[bool] = None


class PermissionResponse(BaseModel):
    code: str
    name: str
    description: Optional[str]
    parent_code: Optional[str]
    is_active: bool
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PermissionTreeNode(BaseModel):
    code: str
    name: str
    description: Optional[str]
    parent_code: Optional[str]
    is_active: bool
    children: List["PermissionTreeNode"] = []


PermissionTreeNode.model_rebuild()


class PermissionListResponse(BaseModel):
    total: int
    page: int
    limit: int
    items: List[PermissionResponse]
    tree: List[PermissionTreeNode]


class PermissionUsageResponse(BaseModel):
    code: str
    groups: List[str]
    children: List[str]


class SeedResponse(BaseModel):
    created: List[str]


class DiscoveredPermission(BaseModel):
    code: str
    name: str
    description: str
    module: str
    parent_code: Optional[str] = None
    sources: List[str]


class DiscoveryResponse(BaseModel):
    count: int
    permissions: List[DiscoveredPermission]


class PermissionModule(BaseModel):
    name: str
    display_name: str
    permissions: List[DiscoveredPermission]


class PermissionModulesResponse(BaseModel):
    modules: List[PermissionModule]


class SyncResponse(BaseModel):
    created: List[str]
    updated: List[str]
    discovered: int
    existing: int


class CleanupRequest(BaseModel):
    dry_run: bool = True


class CleanupResponse(BaseModel):
    dry_run: bool
    candidates: List[str]
    removed: List[str]
    skipped: List[str]


class CacheClearResponse(BaseModel):
    cleared: int


# ---------------------------------------------------------------------------
# 组
# ---------------------------------------------------------------------------

class GroupCreate(BaseModel):
    code: str
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    is_active: bool = True


class GroupUpdate(BaseModel):
    code: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None


class GroupResponse(BaseModel):
    id: str
    code: str
    name: str
    description: Optional[str]
    is_active: bool
    permissions: Optional[List[str]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class GroupListResponse(BaseModel):
    total: int
    page: int
    limit: int
    items: List[GroupResponse]


class GroupPermissionsSet(BaseModel):
    permissions: List[str]


class GroupPermissionsDelta(BaseModel):
    added: List[str]
    removed: List[str]
    permissions: List[str]


class GroupUsersSet(BaseModel):
    user_ids: List[str]


class GroupUsersManage(BaseModel):
    add: List[str] = []
    remove: List[str] = []


class GroupUsersDelta(BaseModel):
    added: List[str]
    removed: List[str]
    user_ids: List[str]


# ---------------------------------------------------------------------------
# 用户
# ---------------------------------------------------------------------------

class UserCreate(BaseModel):
    username: str = Field(..., min_length=1, max_length=100)
    full_name: Optional[str] = None
    is_active: bool = True


class UserResponse(BaseModel):
    id: str
    username: str
    full_name: Optional[str]
    is_active: bool
    group_ids: Optional[List[str]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class UserListResponse(BaseModel):
    total: int
    page: int
    limit: int
    items: List[UserResponse]


class UserGroupsSet(BaseModel):
    group_ids: List[str]


class UserGroupsDelta(BaseModel):
    added: List[str]
    removed: List[str]
    group_ids: List[str]


class EffectivePermissionsResponse(BaseModel):
    user_id: str
    permissions: List[str]


class CheckPermissionRequest(BaseModel):
    """单个权限用 permission，多个权限用 permissions + mode"""
    permission: Optional[str] = None
    permissions: Optional[List[str]] = None
    mode: Literal["any", "all"] = "all"


class CheckPermissionResponse(BaseModel):
    user_id: str
    permission: Optional[str] = None
    permissions: Optional[List[str]] = None
    mode: Optional[str] = None
    has_permission: bool


# ---------------------------------------------------------------------------
# 操作日志
# ---------------------------------------------------------------------------

class ActivityLogResponse(BaseModel):
    id: str
    user_id: Optional[str]
    action: str
    resource: str
    resource_id: Optional[str]
    details: Optional[Dict[str, Any]]
    status: str
    ip_address: Optional[str]
    user_agent: Optional[str]
    method: Optional[str] = None
    path: Optional[str] = None
    created_at: Optional[Any] = None


class ActivityLogListResponse(BaseModel):
    total: int
    page: int
    page_size: int
    logs: List[ActivityLogResponse]
