"""Action Dispatcher - 动作分发

把沙箱产出的动作转换为会话存储上的副作用，并告诉控制器是否继续循环。

| 动作              | 副作用                       | 状态                | 继续 |
|-------------------|------------------------------|---------------------|------|
| ASK_USER          | 追加 AI 轮次                 | PENDING_USER_INPUT  | 否   |
| GET_PLANT_VITALS  | 重新获取状况，追加快照       | IN_PROGRESS         | 是   |
| LOG_STATE         | 追加假设记录                 | IN_PROGRESS         | 是   |
| CONCLUDE          | 记录结论和建议               | COMPLETED           | 否   |
"""
import logging
from dataclasses import dataclass
from typing import Optional

from plantdiag.dao.plant_dao import PlantRecordProvider
from plantdiag.dao.session_dao import SessionDAO
from plantdiag.exceptions import NotFoundError
from plantdiag.models import (
    ActionDescriptor,
    ActionTag,
    ConversationTurn,
    DiagnosticSession,
    HypothesisEntry,
    PlantVitals,
    SessionStatus,
    TurnRole,
    VitalsSnapshot,
)

logger = logging.getLogger(__name__)


@dataclass
class DispatchOutcome:
    """分发结果"""

    session: DiagnosticSession
    continue_loop: bool
    vitals: Optional[PlantVitals] = None  # GET_PLANT_VITALS 取回的最新状况


class ActionDispatcher:
    """动作分发器"""

    def __init__(self, session_dao: SessionDAO, plant_provider: PlantRecordProvider):
        """
        Args:
            session_dao: 会话存储
            plant_provider: 植物档案提供方
        """
        self._session_dao = session_dao
        self._plant_provider = plant_provider
        self._handlers = {
            ActionTag.ASK_USER: self._ask_user,
            ActionTag.GET_PLANT_VITALS: self._get_plant_vitals,
            ActionTag.LOG_STATE: self._log_state,
            ActionTag.CONCLUDE: self._conclude,
        }

    def dispatch(self, session: DiagnosticSession, action: ActionDescriptor) -> DispatchOutcome:
        """执行动作的副作用

        Args:
            session: 当前会话
            action: 沙箱产出的动作

        Returns:
            分发结果（含刷新后的会话）
        """
        handler = self._handlers[action.tag]
        continue_loop, vitals = handler(session, action)

        refreshed = self._session_dao.get(session.session_id)
        if refreshed is None:
            raise NotFoundError(f"会话不存在: {session.session_id}")
        return DispatchOutcome(session=refreshed, continue_loop=continue_loop, vitals=vitals)

    def _ask_user(self, session: DiagnosticSession, action: ActionDescriptor):
        self._session_dao.append_turn(
            session.session_id,
            ConversationTurn(role=TurnRole.AI, text=action.question),
            new_status=SessionStatus.PENDING_USER_INPUT,
        )
        logger.info("会话 %s 等待用户回复", session.session_id)
        return False, None

    def _get_plant_vitals(self, session: DiagnosticSession, action: ActionDescriptor):
        vitals = self._plant_provider.get_vitals(session.plant_id)
        self._session_dao.append_vitals(
            session.session_id,
            VitalsSnapshot(vitals=vitals, reason=action.reason),
        )
        return True, vitals

    def _log_state(self, session: DiagnosticSession, action: ActionDescriptor):
        self._session_dao.append_hypothesis(
            session.session_id,
            HypothesisEntry(state=action.state),
        )
        return True, None

    def _conclude(self, session: DiagnosticSession, action: ActionDescriptor):
        self._session_dao.set_finding(
            session.session_id,
            action.finding,
            action.recommendation,
        )
        logger.info("会话 %s 诊断完成", session.session_id)
        return False, None
