"""
权限、组及其关联数据模型

权限以 code 为主键平铺存储，parent_code 只是对另一条权限的引用，
树形结构在读取时由 build_tree 生成，存储中不存在对象级的父子指针。
"""
from datetime import datetime
from sqlalchemy import Column, String, DateTime, Boolean, ForeignKey, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship
import uuid
from shared.database import Base


class Permission(Base):
    """权限表"""
    __tablename__ = "permissions"

    code = Column(String(100), primary_key=True)  # 如 user.create
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    parent_code = Column(String(100), ForeignKey('permissions.code'), nullable=True, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # 关系
    group_permissions = relationship("GroupPermission", back_populates="permission", cascade="all, delete-orphan")


class Group(Base):
    """权限组表"""
    __tablename__ = "groups"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    code = Column(String(100), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # 关系
    group_permissions = relationship("GroupPermission", back_populates="group", cascade="all, delete-orphan")
    user_groups = relationship("UserGroup", back_populates="group", cascade="all, delete-orphan")


class GroupPermission(Base):
    """组权限关联表"""
    __tablename__ = "group_permissions"

    group_id = Column(UUID(as_uuid=True), ForeignKey('groups.id', ondelete='CASCADE'), primary_key=True)
    permission_code = Column(String(100), ForeignKey('permissions.code', ondelete='CASCADE'), primary_key=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # 关系
    group = relationship("Group", back_populates="group_permissions")
    permission = relationship("Permission", back_populates="group_permissions")


class UserGroup(Base):
    """用户组成员关联表"""
    __tablename__ = "user_groups"

    user_id = Column(UUID(as_uuid=True), ForeignKey('users.id', ondelete='CASCADE'), primary_key=True)
    group_id = Column(UUID(as_uuid=True), ForeignKey('groups.id', ondelete='CASCADE'), primary_key=True, index=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    # 关系
    user = relationship("User", back_populates="user_groups")
    group = relationship("Group", back_populates="user_groups")
