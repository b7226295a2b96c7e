"""
数据库初始化脚本
"""
import logging

import pymysql
from stencilpro.config import get_settings
from stencilpro.database import Base, engine
from stencilpro import models  # noqa: F401  注册所有表

settings = get_settings()

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)


def create_mysql_database():
    """MySQL 下先创建数据库"""
    conn = pymysql.connect(
        host=settings.DB_HOST,
        port=settings.DB_PORT,
        user=settings.DB_USER,
        password=settings.DB_PASSWORD,
        charset='utf8mb4'
    )

    try:
        with conn.cursor() as cursor:
            cursor.execute(f"CREATE DATABASE IF NOT EXISTS {settings.DB_NAME} CHARACTER SET utf8mb4 COLLATE utf8mb4_unicode_ci")
            logger.info(f"数据库 {settings.DB_NAME} 创建成功")
        conn.commit()
    finally:
        conn.close()


def init_database():
    """创建数据库和表"""
    if settings.DATABASE_URL.startswith("mysql"):
        create_mysql_database()

    Base.metadata.create_all(bind=engine)
    logger.info("数据表创建成功")


if __name__ == "__main__":
    init_database()
    logger.info("数据库初始化完成！")
