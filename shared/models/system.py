"""
操作日志相关数据模型
"""
from datetime import datetime
from sqlalchemy import Column, String, DateTime, ForeignKey, Text, CheckConstraint
from sqlalchemy.dialects.postgresql import UUID, JSONB, INET
from sqlalchemy.types import TypeDecorator, JSON
from sqlalchemy.orm import relationship
import uuid
from shared.database import Base


# 操作类型、资源类型、状态的固定取值
ACTIVITY_ACTIONS = ("create", "update", "delete", "assign", "unassign", "view", "login", "logout")
ACTIVITY_RESOURCES = ("permission", "group", "user", "menu", "profile", "system")
ACTIVITY_STATUSES = ("success", "error")


# 创建一个兼容SQLite的JSONB类型
class JSONBCompat(TypeDecorator):
    """兼容SQLite的JSONB类型"""
    impl = JSON
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(JSONB())
        else:
            return dialect.type_descriptor(JSON())


# 创建一个兼容SQLite的INET类型
class INETCompat(TypeDecorator):
    """兼容SQLite的INET类型"""
    impl = String
    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(INET())
        else:
            return dialect.type_descriptor(String(45))  # IPv6最长45字符


def _in_clause(column: str, values) -> str:
    return "{} IN ({})".format(column, ", ".join(f"'{v}'" for v in values))


class ActivityLog(Base):
    """操作日志表（只追加，不修改不删除）"""
    __tablename__ = "activity_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(UUID(as_uuid=True), ForeignKey('users.id', ondelete='SET NULL'), nullable=True, index=True)
    action = Column(String(20), nullable=False, index=True)
    resource = Column(String(20), nullable=False, index=True)
    resource_id = Column(String(100), nullable=True, index=True)
    details = Column(JSONBCompat, nullable=True)
    status = Column(String(10), default='success', nullable=False)
    ip_address = Column(INETCompat, nullable=True)
    user_agent = Column(Text, nullable=True)
    method = Column(String(10), nullable=True)
    path = Column(String(500), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    # 关系
    user = relationship("User", back_populates="activity_logs")

    __table_args__ = (
        CheckConstraint(_in_clause("action", ACTIVITY_ACTIONS), name='check_activity_action'),
        CheckConstraint(_in_clause("resource", ACTIVITY_RESOURCES), name='check_activity_resource'),
        CheckConstraint(_in_clause("status", ACTIVITY_STATUSES), name='check_activity_status'),
    )
