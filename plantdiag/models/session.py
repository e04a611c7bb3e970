"""诊断会话数据模型"""
from datetime import datetime
from enum import Enum
from typing import List, Optional, Dict, Any

from pydantic import BaseModel, Field

from plantdiag.models.plant import PlantVitals


class SessionStatus(str, Enum):
    """会话状态"""

    IN_PROGRESS = "IN_PROGRESS"
    PENDING_USER_INPUT = "PENDING_USER_INPUT"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)

    @property
    def is_open(self) -> bool:
        return not self.is_terminal


OPEN_STATUSES = (SessionStatus.IN_PROGRESS, SessionStatus.PENDING_USER_INPUT)

# 状态迁移表：终止状态没有出边
ALLOWED_TRANSITIONS = {
    SessionStatus.IN_PROGRESS: {
        SessionStatus.IN_PROGRESS,
        SessionStatus.PENDING_USER_INPUT,
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
    },
    SessionStatus.PENDING_USER_INPUT: {
        SessionStatus.IN_PROGRESS,
        SessionStatus.FAILED,
    },
    SessionStatus.COMPLETED: set(),
    SessionStatus.FAILED: set(),
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    """判断状态迁移是否合法"""
    return target in ALLOWED_TRANSITIONS[SessionStatus(current)]


def normalize_problem(problem: str) -> str:
    """问题描述归一化（用于判断是否为同一个问题）"""
    return " ".join(problem.split()).lower()


class TurnRole(str, Enum):
    """对话角色"""

    AI = "AI"
    USER = "User"


class ConversationTurn(BaseModel):
    """对话轮次（只追加）"""

    role: TurnRole
    text: str
    seq: int = 0  # 由存储层分配
    created_at: datetime = Field(default_factory=datetime.now)


class HypothesisEntry(BaseModel):
    """假设记录（LOG_STATE 产生，只写不读的审计轨迹）"""

    state: Dict[str, Any]
    seq: int = 0
    created_at: datetime = Field(default_factory=datetime.now)


class VitalsSnapshot(BaseModel):
    """GET_PLANT_VITALS 取回的植物状况快照"""

    vitals: PlantVitals
    reason: str = ""
    seq: int = 0
    created_at: datetime = Field(default_factory=datetime.now)


class SessionFailure(BaseModel):
    """会话失败原因"""

    code: str
    message: str


class SessionSummary(BaseModel):
    """会话摘要（历史列表用）"""

    session_id: str
    plant_id: str
    problem: str
    status: SessionStatus
    finding: Optional[str] = None
    failure_code: Optional[str] = None
    turn_count: int = 0
    hypothesis_count: int = 0
    created_at: datetime
    updated_at: datetime


class SessionView(BaseModel):
    """单次调用结束后返回给调用方的会话视图"""

    session_id: str
    plant_id: str
    problem: str
    status: SessionStatus
    question: Optional[str] = None
    finding: Optional[str] = None
    recommendation: Optional[str] = None
    failure: Optional[SessionFailure] = None

    @property
    def awaiting_reply(self) -> bool:
        return self.status == SessionStatus.PENDING_USER_INPUT


class DiagnosticSession(BaseModel):
    """诊断会话"""

    session_id: str
    plant_id: str
    problem: str
    status: SessionStatus = SessionStatus.IN_PROGRESS

    turns: List[ConversationTurn] = []
    hypotheses: List[HypothesisEntry] = []
    vitals_log: List[VitalsSnapshot] = []

    # 仅 COMPLETED 时有值
    finding: Optional[str] = None
    recommendation: Optional[str] = None

    # 仅 FAILED 时有值
    failure: Optional[SessionFailure] = None

    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    @property
    def is_open(self) -> bool:
        return self.status.is_open

    @property
    def latest_question(self) -> Optional[str]:
        """最近一次 AI 提问"""
        for turn in reversed(self.turns):
            if turn.role == TurnRole.AI:
                return turn.text
        return None

    def to_summary(self) -> SessionSummary:
        return SessionSummary(
            session_id=self.session_id,
            plant_id=self.plant_id,
            problem=self.problem,
            status=self.status,
            finding=self.finding,
            failure_code=self.failure.code if self.failure else None,
            turn_count=len(self.turns),
            hypothesis_count=len(self.hypotheses),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def to_view(self) -> SessionView:
        return SessionView(
            session_id=self.session_id,
            plant_id=self.plant_id,
            problem=self.problem,
            status=self.status,
            question=(
                self.latest_question
                if self.status == SessionStatus.PENDING_USER_INPUT
                else None
            ),
            finding=self.finding if self.status == SessionStatus.COMPLETED else None,
            recommendation=(
                self.recommendation if self.status == SessionStatus.COMPLETED else None
            ),
            failure=self.failure if self.status == SessionStatus.FAILED else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DiagnosticSession":
        return cls.model_validate(data)
