"""数据库初始化脚本

创建 SQLite 数据库的所有表结构

表结构：
- 植物档案表：plants
- 会话表：diagnosis_sessions
- 会话历史表（只追加）：session_turns, session_hypotheses, session_vitals
"""
import sqlite3
from pathlib import Path
from typing import Optional

from plantdiag.dao.base import get_default_db_path


# 数据库 schema SQL
SCHEMA_SQL = """
-- ============================================
-- 植物档案
-- ============================================

CREATE TABLE IF NOT EXISTS plants (
    plant_id TEXT PRIMARY KEY,                 -- 格式: plant_{uuid hex[:8]}
    name TEXT NOT NULL,
    care_json TEXT NOT NULL,                   -- JSON: CareRequirements
    created_at TEXT NOT NULL
);

-- ============================================
-- 诊断会话
-- ============================================

CREATE TABLE IF NOT EXISTS diagnosis_sessions (
    session_id TEXT PRIMARY KEY,
    plant_id TEXT NOT NULL,
    problem TEXT NOT NULL,                     -- 用户原始问题描述
    problem_key TEXT NOT NULL,                 -- 归一化后的问题（判重用）
    status TEXT NOT NULL,                      -- IN_PROGRESS / PENDING_USER_INPUT / COMPLETED / FAILED
    finding TEXT,
    recommendation TEXT,
    failure_code TEXT,
    failure_message TEXT,
    lock_owner TEXT,                           -- 当前持有写锁的调用
    locked_at REAL,                            -- 加锁时间（unix 秒）
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_diagnosis_sessions_plant_id ON diagnosis_sessions(plant_id);

-- 同一植物、同一问题最多一个未结束的会话
CREATE UNIQUE INDEX IF NOT EXISTS uq_diagnosis_sessions_open
    ON diagnosis_sessions(plant_id, problem_key)
    WHERE status IN ('IN_PROGRESS', 'PENDING_USER_INPUT');

-- ============================================
-- 会话历史（只追加）
-- ============================================

CREATE TABLE IF NOT EXISTS session_turns (
    session_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    role TEXT NOT NULL,                        -- AI / User
    text TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (session_id, seq),
    FOREIGN KEY (session_id) REFERENCES diagnosis_sessions(session_id)
);

CREATE TABLE IF NOT EXISTS session_hypotheses (
    session_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    state_json TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (session_id, seq),
    FOREIGN KEY (session_id) REFERENCES diagnosis_sessions(session_id)
);

CREATE TABLE IF NOT EXISTS session_vitals (
    session_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    reason TEXT NOT NULL DEFAULT '',
    vitals_json TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (session_id, seq),
    FOREIGN KEY (session_id) REFERENCES diagnosis_sessions(session_id)
);

CREATE TRIGGER IF NOT EXISTS trg_session_turns_no_update
BEFORE UPDATE ON session_turns
BEGIN
    SELECT RAISE(ABORT, 'session_turns is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_session_turns_no_delete
BEFORE DELETE ON session_turns
BEGIN
    SELECT RAISE(ABORT, 'session_turns is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_session_hypotheses_no_update
BEFORE UPDATE ON session_hypotheses
BEGIN
    SELECT RAISE(ABORT, 'session_hypotheses is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_session_hypotheses_no_delete
BEFORE DELETE ON session_hypotheses
BEGIN
    SELECT RAISE(ABORT, 'session_hypotheses is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_session_vitals_no_update
BEFORE UPDATE ON session_vitals
BEGIN
    SELECT RAISE(ABORT, 'session_vitals is append-only');
END;

CREATE TRIGGER IF NOT EXISTS trg_session_vitals_no_delete
BEFORE DELETE ON session_vitals
BEGIN
    SELECT RAISE(ABORT, 'session_vitals is append-only');
END;
"""


def init_database(db_path: Optional[str] = None, verbose: bool = True) -> str:
    """
    初始化数据库，创建所有表结构（可重复执行）

    Args:
        db_path: 数据库文件路径，默认为 data/plantdiag.db（优先环境变量 DATA_DIR）
        verbose: 是否打印初始化信息

    Returns:
        实际使用的数据库路径
    """
    if db_path is None:
        db_path = get_default_db_path()
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    if verbose:
        print(f"正在初始化数据库: {db_path}")

    # 连接数据库（如果不存在会自动创建）
    conn = sqlite3.connect(db_path)
    cursor = conn.cursor()

    try:
        cursor.executescript(SCHEMA_SQL)
        conn.commit()

        if verbose:
            print("[OK] 数据库表结构创建成功")
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")
            tables = cursor.fetchall()
            print(f"\n已创建的表 ({len(tables)}):")
            for table in tables:
                print(f"  - {table[0]}")

    except sqlite3.Error as e:
        if verbose:
            print(f"[ERROR] 数据库初始化失败: {e}")
        conn.rollback()
        raise
    finally:
        conn.close()

    if verbose:
        print(f"\n数据库初始化完成: {db_path}")
    return db_path


if __name__ == "__main__":
    init_database()
