"""DAO 基类

提供数据库连接管理的基础功能
"""
import os
import sqlite3
from typing import Optional
from pathlib import Path
from contextlib import contextmanager

from plantdiag.exceptions import StorageError


def get_default_db_path() -> str:
    """获取默认数据库路径

    优先从环境变量 DATA_DIR 读取，否则使用项目根目录的 data/plantdiag.db
    """
    data_dir = os.environ.get("DATA_DIR")
    if data_dir:
        return str(Path(data_dir) / "plantdiag.db")
    project_root = Path(__file__).parent.parent.parent
    return str(project_root / "data" / "plantdiag.db")


class BaseDAO:
    """DAO 基类

    提供数据库连接管理和事务封装，所有 sqlite3 错误统一转换为 StorageError
    """

    DEFAULT_BUSY_TIMEOUT = 5.0  # 秒，等待其他写事务释放的时间

    def __init__(self, db_path: Optional[str] = None, busy_timeout: Optional[float] = None):
        """
        初始化 DAO

        Args:
            db_path: 数据库路径，如果为 None 则使用默认路径（优先环境变量 DATA_DIR）
            busy_timeout: SQLite 忙等待超时（秒）
        """
        if db_path is None:
            db_path = get_default_db_path()

        self.db_path = db_path
        self.busy_timeout = busy_timeout if busy_timeout is not None else self.DEFAULT_BUSY_TIMEOUT

    @contextmanager
    def get_connection(self, row_factory: bool = True):
        """
        获取数据库连接的上下文管理器（autocommit 模式，事务由 transaction() 显式控制）

        Args:
            row_factory: 是否启用 Row 工厂（允许通过列名访问）

        Yields:
            sqlite3.Connection: 数据库连接
        """
        try:
            conn = sqlite3.connect(
                self.db_path,
                timeout=self.busy_timeout,
                isolation_level=None,
            )
        except sqlite3.Error as e:
            raise StorageError(f"无法打开数据库 {self.db_path}: {e}") from e

        if row_factory:
            conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA foreign_keys = ON")
            yield conn
        except sqlite3.Error as e:
            raise StorageError(f"数据库操作失败: {e}") from e
        finally:
            conn.close()

    @contextmanager
    def get_cursor(self, row_factory: bool = True):
        """
        获取数据库游标的上下文管理器（只读查询用）

        Args:
            row_factory: 是否启用 Row 工厂

        Yields:
            tuple: (connection, cursor)
        """
        with self.get_connection(row_factory) as conn:
            cursor = conn.cursor()
            yield conn, cursor

    @contextmanager
    def transaction(self, row_factory: bool = True):
        """
        写事务上下文管理器

        使用 BEGIN IMMEDIATE 取得写锁，块内全部语句要么一起提交，要么一起回滚。

        Yields:
            tuple: (connection, cursor)
        """
        with self.get_connection(row_factory) as conn:
            cursor = conn.cursor()
            cursor.execute("BEGIN IMMEDIATE")
            try:
                yield conn, cursor
            except BaseException:
                conn.rollback()
                raise
            else:
                conn.commit()
