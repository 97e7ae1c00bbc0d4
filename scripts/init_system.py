"""
系统初始化脚本

功能：
1. 初始化默认权限体系
2. 创建 ADMIN 组并授予全部权限
3. 登记管理员用户并加入 ADMIN 组

重复执行是安全的，已存在的数据会被跳过。
"""
import sys
import os

# 添加项目根目录到Python路径
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from typing import Any, Dict

from sqlalchemy.orm import Session
from shared.database import SessionLocal, engine, Base
from shared.models import Group, Permission, User
from services.permission import catalog, groups, membership

ADMIN_GROUP_CODE = "ADMIN"
ADMIN_USERNAME = "admin"


def ensure_admin_group(db: Session) -> Group:
    """创建 ADMIN 组，已存在时直接返回"""
    group = db.query(Group).filter(Group.code == ADMIN_GROUP_CODE).first()
    if group:
        print(f"⚠️  组 '{ADMIN_GROUP_CODE}' 已存在，跳过创建")
        return group

    group = groups.create_group(db, code=ADMIN_GROUP_CODE, name="Administrators", description="拥有全部权限的管理员组")
    print(f"✅ 组 '{ADMIN_GROUP_CODE}' 创建成功")
    return group


def ensure_admin_user(db: Session) -> User:
    """登记管理员用户，已存在时直接返回"""
    user = db.query(User).filter(User.username == ADMIN_USERNAME).first()
    if user:
        print("⚠️  管理员用户已存在，跳过创建")
        return user

    user = membership.create_user(db, username=ADMIN_USERNAME, full_name="System Administrator")
    print("✅ 管理员用户创建成功")
    print(f"   用户ID: {user.id}")
    return user


def bootstrap(db: Session) -> Dict[str, Any]:
    """
    初始化权限、ADMIN 组和管理员用户

    Returns:
        {"created_permissions", "group_id", "admin_user_id"}
    """
    created = catalog.seed_permissions(db)
    print(f"✅ 默认权限初始化完成（新建 {len(created)} 个）")

    group = ensure_admin_group(db)
    all_codes = [row.code for row in db.query(Permission.code).all()]
    delta = groups.set_group_permissions(db, group.id, all_codes)
    print(f"✅ ADMIN 组权限已同步（新增 {len(delta['added'])} 个）")

    user = ensure_admin_user(db)
    membership.add_user_to_group(db, user.id, group.id)

    return {
        "created_permissions": created,
        "group_id": str(group.id),
        "admin_user_id": str(user.id),
    }


def init_system():
    """
    初始化系统
    """
    print("=" * 60)
    print("开始系统初始化...")
    print("=" * 60)

    Base.metadata.create_all(bind=engine)
    db = SessionLocal()

    try:
        summary = bootstrap(db)

        print("\n" + "=" * 60)
        print("✅ 系统初始化完成！")
        print("=" * 60)
        print("\n📋 初始化摘要:")
        print(f"   - 新建权限数: {len(summary['created_permissions'])}")
        print(f"   - ADMIN 组ID: {summary['group_id']}")
        print(f"   - 管理员用户ID: {summary['admin_user_id']}")
        print("\n⚠️  调用需要权限的接口时，请在 X-User-Id 请求头中传入管理员用户ID")
        print("=" * 60)

    except Exception as e:
        db.rollback()
        print(f"\n❌ 系统初始化失败: {str(e)}")
        raise
    finally:
        db.close()


if __name__ == "__main__":
    init_system()
