"""
初始化数据库脚本（开发环境直接建表，生产环境使用 alembic 迁移）
"""
import sys
import os

# 添加项目根目录到Python路径
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from shared.database import engine, Base
from shared.models import *


def init_database():
    """初始化数据库"""
    print("正在创建数据库表...")
    Base.metadata.create_all(bind=engine)
    print("✅ 数据库表创建成功！")


if __name__ == "__main__":
    init_database()
