"""Session DAO

负责诊断会话及其只追加历史（对话轮次、假设记录、植物状况快照）的数据访问。

所有写操作都在单个事务内完成，状态迁移在同一事务内按迁移表校验。
"""
import json
import sqlite3
import time
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Optional, List

from plantdiag.dao.base import BaseDAO
from plantdiag.exceptions import (
    NotFoundError,
    SessionBusyError,
    SessionStateError,
)
from plantdiag.models import (
    SessionStatus,
    OPEN_STATUSES,
    can_transition,
    normalize_problem,
    TurnRole,
    ConversationTurn,
    HypothesisEntry,
    VitalsSnapshot,
    SessionFailure,
    SessionSummary,
    DiagnosticSession,
    PlantVitals,
)


class SessionDAO(BaseDAO):
    """诊断会话数据访问对象"""

    DEFAULT_LOCK_TIMEOUT = 900.0  # 秒，超过该时间的锁视为崩溃遗留

    def __init__(
        self,
        db_path: Optional[str] = None,
        lock_timeout: Optional[float] = None,
        busy_timeout: Optional[float] = None,
    ):
        """
        Args:
            db_path: 数据库路径
            lock_timeout: 会话写锁过期时间（秒）
            busy_timeout: SQLite 忙等待超时（秒）
        """
        super().__init__(db_path, busy_timeout=busy_timeout)
        self.lock_timeout = lock_timeout if lock_timeout is not None else self.DEFAULT_LOCK_TIMEOUT

    # ===== 查询 =====

    def get(self, session_id: str) -> Optional[DiagnosticSession]:
        """
        获取完整会话（含对话轮次、假设记录、状况快照）

        Args:
            session_id: 会话 ID

        Returns:
            会话，如果不存在返回 None
        """
        with self.get_cursor() as (conn, cursor):
            cursor.execute(
                "SELECT * FROM diagnosis_sessions WHERE session_id = ?",
                (session_id,),
            )
            row = cursor.fetchone()
            if not row:
                return None
            return self._load_full(cursor, row)

    def load(self, plant_id: str, problem: str) -> Optional[DiagnosticSession]:
        """
        获取指定植物、指定问题的未结束会话

        Args:
            plant_id: 植物 ID
            problem: 问题描述（归一化后比较）

        Returns:
            未结束的会话，如果没有返回 None
        """
        with self.get_cursor() as (conn, cursor):
            cursor.execute(
                """
                SELECT * FROM diagnosis_sessions
                WHERE plant_id = ? AND problem_key = ?
                  AND status IN (?, ?)
                """,
                (plant_id, normalize_problem(problem), *[s.value for s in OPEN_STATUSES]),
            )
            row = cursor.fetchone()
            if not row:
                return None
            return self._load_full(cursor, row)

    def list_for_plant(self, plant_id: str) -> List[SessionSummary]:
        """
        列出某植物的全部会话摘要（最新在前）

        Args:
            plant_id: 植物 ID

        Returns:
            会话摘要列表
        """
        with self.get_cursor() as (conn, cursor):
            cursor.execute(
                f"""
                {self._SUMMARY_SELECT}
                WHERE s.plant_id = ?
                ORDER BY s.created_at DESC, s.rowid DESC
                """,
                (plant_id,),
            )
            return [self._row_to_summary(row) for row in cursor.fetchall()]

    def list_recent(self, limit: int = 10) -> List[SessionSummary]:
        """
        列出最近更新的会话

        Args:
            limit: 返回数量

        Returns:
            会话摘要列表
        """
        with self.get_cursor() as (conn, cursor):
            cursor.execute(
                f"""
                {self._SUMMARY_SELECT}
                ORDER BY s.updated_at DESC, s.rowid DESC
                LIMIT ?
                """,
                (limit,),
            )
            return [self._row_to_summary(row) for row in cursor.fetchall()]

    # ===== 写操作 =====

    def create(self, plant_id: str, problem: str) -> DiagnosticSession:
        """
        创建新会话（初始状态 IN_PROGRESS）

        Args:
            plant_id: 植物 ID
            problem: 问题描述

        Returns:
            新创建的会话

        Raises:
            SessionBusyError: 同一植物、同一问题已存在未结束的会话
        """
        session_id = f"sess_{datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:6]}"
        session = DiagnosticSession(
            session_id=session_id,
            plant_id=plant_id,
            problem=problem,
        )

        with self.transaction(row_factory=False) as (conn, cursor):
            try:
                cursor.execute(
                    """
                    INSERT INTO diagnosis_sessions
                        (session_id, plant_id, problem, problem_key, status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        session.session_id,
                        plant_id,
                        problem,
                        normalize_problem(problem),
                        session.status.value,
                        session.created_at.isoformat(),
                        session.updated_at.isoformat(),
                    ),
                )
            except sqlite3.IntegrityError as e:
                raise SessionBusyError(
                    f"植物 {plant_id} 的该问题已有进行中的会话"
                ) from e

        return session

    def append_turn(
        self,
        session_id: str,
        turn: ConversationTurn,
        new_status: Optional[SessionStatus] = None,
    ) -> ConversationTurn:
        """
        追加对话轮次，可选地在同一事务内迁移状态

        Args:
            session_id: 会话 ID
            turn: 对话轮次（seq 由本方法分配）
            new_status: 追加后迁移到的状态

        Returns:
            带 seq 的对话轮次
        """
        with self.transaction(row_factory=False) as (conn, cursor):
            self._check_appendable(cursor, session_id, new_status)
            seq = self._next_seq(cursor, "session_turns", session_id)
            cursor.execute(
                """
                INSERT INTO session_turns (session_id, seq, role, text, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (session_id, seq, TurnRole(turn.role).value, turn.text, turn.created_at.isoformat()),
            )
            self._touch(cursor, session_id, status=new_status)

        return turn.model_copy(update={"seq": seq})

    def append_hypothesis(self, session_id: str, entry: HypothesisEntry) -> HypothesisEntry:
        """
        追加假设记录

        Args:
            session_id: 会话 ID
            entry: 假设记录

        Returns:
            带 seq 的假设记录
        """
        with self.transaction(row_factory=False) as (conn, cursor):
            self._check_appendable(cursor, session_id)
            seq = self._next_seq(cursor, "session_hypotheses", session_id)
            cursor.execute(
                """
                INSERT INTO session_hypotheses (session_id, seq, state_json, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    session_id,
                    seq,
                    json.dumps(entry.state, ensure_ascii=False, sort_keys=True),
                    entry.created_at.isoformat(),
                ),
            )
            self._touch(cursor, session_id)

        return entry.model_copy(update={"seq": seq})

    def append_vitals(self, session_id: str, snapshot: VitalsSnapshot) -> VitalsSnapshot:
        """
        追加植物状况快照

        Args:
            session_id: 会话 ID
            snapshot: 状况快照

        Returns:
            带 seq 的状况快照
        """
        with self.transaction(row_factory=False) as (conn, cursor):
            self._check_appendable(cursor, session_id)
            seq = self._next_seq(cursor, "session_vitals", session_id)
            cursor.execute(
                """
                INSERT INTO session_vitals (session_id, seq, reason, vitals_json, created_at)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    session_id,
                    seq,
                    snapshot.reason,
                    json.dumps(snapshot.vitals.to_dict(), ensure_ascii=False, sort_keys=True),
                    snapshot.created_at.isoformat(),
                ),
            )
            self._touch(cursor, session_id)

        return snapshot.model_copy(update={"seq": seq})

    def set_status(
        self,
        session_id: str,
        status: SessionStatus,
        failure: Optional[SessionFailure] = None,
    ) -> None:
        """
        迁移会话状态

        Args:
            session_id: 会话 ID
            status: 目标状态
            failure: 失败原因（仅 FAILED 时记录）

        Raises:
            SessionStateError: 非法状态迁移
        """
        with self.transaction(row_factory=False) as (conn, cursor):
            current = self._current_status(cursor, session_id)
            self._check_transition(session_id, current, status)
            cursor.execute(
                """
                UPDATE diagnosis_sessions
                SET status = ?, failure_code = ?, failure_message = ?, updated_at = ?
                WHERE session_id = ?
                """,
                (
                    SessionStatus(status).value,
                    failure.code if failure else None,
                    failure.message if failure else None,
                    datetime.now().isoformat(),
                    session_id,
                ),
            )

    def set_finding(self, session_id: str, finding: str, recommendation: str) -> None:
        """
        记录诊断结论并结束会话（COMPLETED）

        Args:
            session_id: 会话 ID
            finding: 诊断结论
            recommendation: 处理建议
        """
        with self.transaction(row_factory=False) as (conn, cursor):
            current = self._current_status(cursor, session_id)
            self._check_transition(session_id, current, SessionStatus.COMPLETED)
            cursor.execute(
                """
                UPDATE diagnosis_sessions
                SET status = ?, finding = ?, recommendation = ?, updated_at = ?
                WHERE session_id = ?
                """,
                (
                    SessionStatus.COMPLETED.value,
                    finding,
                    recommendation,
                    datetime.now().isoformat(),
                    session_id,
                ),
            )

    # ===== 写锁 =====

    def acquire_lock(self, session_id: str) -> str:
        """
        获取会话写锁

        锁未被持有，或持有时间超过 lock_timeout（视为崩溃遗留）时才能获取。

        Args:
            session_id: 会话 ID

        Returns:
            锁令牌（释放时使用）

        Raises:
            NotFoundError: 会话不存在
            SessionBusyError: 会话正被其他调用处理
        """
        token = uuid.uuid4().hex
        now = time.time()
        with self.transaction(row_factory=False) as (conn, cursor):
            cursor.execute(
                """
                UPDATE diagnosis_sessions
                SET lock_owner = ?, locked_at = ?
                WHERE session_id = ?
                  AND (lock_owner IS NULL OR locked_at < ?)
                """,
                (token, now, session_id, now - self.lock_timeout),
            )
            if cursor.rowcount == 0:
                cursor.execute(
                    "SELECT 1 FROM diagnosis_sessions WHERE session_id = ?",
                    (session_id,),
                )
                if cursor.fetchone() is None:
                    raise NotFoundError(f"会话不存在: {session_id}")
                raise SessionBusyError(f"会话正在处理中: {session_id}")
        return token

    def release_lock(self, session_id: str, token: str) -> bool:
        """
        释放会话写锁（仅当令牌匹配时）

        Returns:
            是否释放成功
        """
        with self.transaction(row_factory=False) as (conn, cursor):
            cursor.execute(
                """
                UPDATE diagnosis_sessions
                SET lock_owner = NULL, locked_at = NULL
                WHERE session_id = ? AND lock_owner = ?
                """,
                (session_id, token),
            )
            return cursor.rowcount > 0

    @contextmanager
    def lock(self, session_id: str):
        """会话写锁上下文管理器"""
        token = self.acquire_lock(session_id)
        try:
            yield token
        finally:
            self.release_lock(session_id, token)

    # ===== 内部方法 =====

    _SUMMARY_SELECT = """
        SELECT s.*,
               (SELECT COUNT(*) FROM session_turns t WHERE t.session_id = s.session_id) AS turn_count,
               (SELECT COUNT(*) FROM session_hypotheses h WHERE h.session_id = s.session_id) AS hypothesis_count
        FROM diagnosis_sessions s
    """

    def _current_status(self, cursor, session_id: str) -> SessionStatus:
        cursor.execute(
            "SELECT status FROM diagnosis_sessions WHERE session_id = ?",
            (session_id,),
        )
        row = cursor.fetchone()
        if row is None:
            raise NotFoundError(f"会话不存在: {session_id}")
        return SessionStatus(row[0])

    def _check_transition(
        self, session_id: str, current: SessionStatus, target: SessionStatus
    ) -> None:
        if not can_transition(current, target):
            raise SessionStateError(
                f"会话 {session_id} 不允许从 {current.value} 迁移到 {SessionStatus(target).value}"
            )

    def _check_appendable(
        self, cursor, session_id: str, new_status: Optional[SessionStatus] = None
    ) -> None:
        current = self._current_status(cursor, session_id)
        if current.is_terminal:
            raise SessionStateError(f"会话 {session_id} 已结束 ({current.value})，不能追加记录")
        if new_status is not None:
            self._check_transition(session_id, current, new_status)

    def _next_seq(self, cursor, table: str, session_id: str) -> int:
        cursor.execute(
            f"SELECT COALESCE(MAX(seq), -1) + 1 FROM {table} WHERE session_id = ?",
            (session_id,),
        )
        return cursor.fetchone()[0]

    def _touch(self, cursor, session_id: str, status: Optional[SessionStatus] = None) -> None:
        now = datetime.now().isoformat()
        if status is None:
            cursor.execute(
                "UPDATE diagnosis_sessions SET updated_at = ? WHERE session_id = ?",
                (now, session_id),
            )
        else:
            cursor.execute(
                "UPDATE diagnosis_sessions SET status = ?, updated_at = ? WHERE session_id = ?",
                (SessionStatus(status).value, now, session_id),
            )

    def _load_full(self, cursor, row) -> DiagnosticSession:
        session_id = row["session_id"]

        cursor.execute(
            "SELECT seq, role, text, created_at FROM session_turns WHERE session_id = ? ORDER BY seq",
            (session_id,),
        )
        turns = [
            ConversationTurn(
                seq=r["seq"],
                role=TurnRole(r["role"]),
                text=r["text"],
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in cursor.fetchall()
        ]

        cursor.execute(
            "SELECT seq, state_json, created_at FROM session_hypotheses WHERE session_id = ? ORDER BY seq",
            (session_id,),
        )
        hypotheses = [
            HypothesisEntry(
                seq=r["seq"],
                state=json.loads(r["state_json"]),
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in cursor.fetchall()
        ]

        cursor.execute(
            "SELECT seq, reason, vitals_json, created_at FROM session_vitals WHERE session_id = ? ORDER BY seq",
            (session_id,),
        )
        vitals_log = [
            VitalsSnapshot(
                seq=r["seq"],
                reason=r["reason"],
                vitals=PlantVitals.from_dict(json.loads(r["vitals_json"])),
                created_at=datetime.fromisoformat(r["created_at"]),
            )
            for r in cursor.fetchall()
        ]

        failure = None
        if row["failure_code"]:
            failure = SessionFailure(code=row["failure_code"], message=row["failure_message"] or "")

        return DiagnosticSession(
            session_id=session_id,
            plant_id=row["plant_id"],
            problem=row["problem"],
            status=SessionStatus(row["status"]),
            turns=turns,
            hypotheses=hypotheses,
            vitals_log=vitals_log,
            finding=row["finding"],
            recommendation=row["recommendation"],
            failure=failure,
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    def _row_to_summary(self, row) -> SessionSummary:
        return SessionSummary(
            session_id=row["session_id"],
            plant_id=row["plant_id"],
            problem=row["problem"],
            status=SessionStatus(row["status"]),
            finding=row["finding"],
            failure_code=row["failure_code"],
            turn_count=row["turn_count"],
            hypothesis_count=row["hypothesis_count"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )
