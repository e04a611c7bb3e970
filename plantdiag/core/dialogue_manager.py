"""DiagnosticDialogueManager - 诊断会话主控

协调 ContextBuilder、ReasoningClient、SandboxExecutor、ActionDispatcher 完成一次调用。

流程：
1. 加锁，读取会话和植物状况
2. 构建上下文，推理服务生成决策脚本
3. 沙箱执行脚本，得到唯一动作（脚本出错时可带错误信息重新生成）
4. 分发动作：ASK_USER / CONCLUDE 结束本次调用，GET_PLANT_VITALS / LOG_STATE 回到 2
5. 释放锁
"""
import logging
from typing import Optional, List, Callable, Dict, Any

from plantdiag.core.context_builder import ContextBuilder
from plantdiag.core.dispatcher import ActionDispatcher
from plantdiag.core.reasoning_client import ReasoningClient
from plantdiag.core.sandbox import SandboxExecutor
from plantdiag.dao.plant_dao import PlantDAO, PlantRecordProvider
from plantdiag.dao.session_dao import SessionDAO
from plantdiag.exceptions import (
    LoopExceededError,
    NotFoundError,
    PlantDiagError,
    ReasoningServiceError,
    SandboxError,
    SessionStateError,
)
from plantdiag.models import (
    ActionDescriptor,
    ConversationTurn,
    DiagnosticSession,
    PlantVitals,
    SessionFailure,
    SessionStatus,
    SessionSummary,
    SessionView,
    TurnRole,
)
from plantdiag.services.llm_service import LLMService
from plantdiag.utils.config import Config

logger = logging.getLogger(__name__)


class DiagnosticDialogueManager:
    """诊断对话管理器

    每次调用（start / resume）只推进一个回合：要么停在向用户提问，要么得出结论，
    要么失败。会话状态全部持久化在 SessionDAO 中，调用之间不保留内存状态。
    """

    # 单次调用内连续自驱动轮次上限（防止无限循环）
    MAX_SELF_DIRECTED_TURNS = 10

    # 每轮脚本出错后最多重新生成的次数
    MAX_SELF_CORRECTIONS = 1

    def __init__(
        self,
        session_dao: SessionDAO,
        plant_provider: PlantRecordProvider,
        reasoning_client: ReasoningClient,
        sandbox_executor: SandboxExecutor,
        context_builder: Optional[ContextBuilder] = None,
        max_self_directed_turns: int = MAX_SELF_DIRECTED_TURNS,
        max_self_corrections: int = MAX_SELF_CORRECTIONS,
        progress_callback: Optional[Callable[[str], None]] = None,
    ):
        """初始化对话管理器

        Args:
            session_dao: 会话存储
            plant_provider: 植物档案提供方
            reasoning_client: 推理客户端
            sandbox_executor: 沙箱执行器
            context_builder: 上下文构建器
            max_self_directed_turns: 连续自驱动轮次上限
            max_self_corrections: 脚本出错后的重新生成次数
            progress_callback: 进度回调函数，用于输出诊断过程信息
        """
        self._session_dao = session_dao
        self._plant_provider = plant_provider
        self._reasoning_client = reasoning_client
        self._sandbox = sandbox_executor
        self._context_builder = context_builder or ContextBuilder()
        self._dispatcher = ActionDispatcher(session_dao, plant_provider)
        self._max_self_directed_turns = max_self_directed_turns
        self._max_self_corrections = max_self_corrections
        self._progress_callback = progress_callback

    @classmethod
    def from_config(
        cls,
        config: Config,
        db_path: Optional[str] = None,
        progress_callback: Optional[Callable[[str], None]] = None,
    ) -> "DiagnosticDialogueManager":
        """根据配置组装全部组件"""
        db_path = db_path or config.storage.db_path
        session_dao = SessionDAO(
            db_path,
            lock_timeout=config.storage.lock_timeout_seconds,
            busy_timeout=config.storage.busy_timeout_seconds,
        )
        plant_dao = PlantDAO(db_path, busy_timeout=config.storage.busy_timeout_seconds)
        llm_service = LLMService(config, progress_callback=progress_callback)
        return cls(
            session_dao=session_dao,
            plant_provider=plant_dao,
            reasoning_client=ReasoningClient(llm_service),
            sandbox_executor=SandboxExecutor.from_config(config.sandbox),
            context_builder=ContextBuilder(config.kernel.max_history_turns),
            max_self_directed_turns=config.kernel.max_self_directed_turns,
            max_self_corrections=config.kernel.max_self_corrections,
            progress_callback=progress_callback,
        )

    def _report_progress(self, message: str):
        """报告进度"""
        if self._progress_callback:
            self._progress_callback(message)

    # ===== 对外接口 =====

    def start(self, plant_id: str, problem: str) -> SessionView:
        """开始诊断（同一植物、同一问题已有进行中的会话时继续该会话）

        Args:
            plant_id: 植物 ID
            problem: 问题描述

        Returns:
            本次调用结束后的会话视图

        Raises:
            NotFoundError: 植物不存在
            SessionBusyError: 会话正被其他调用处理
            StorageError: 存储不可用
        """
        if not problem or not problem.strip():
            raise ValueError("问题描述不能为空")

        vitals = self._plant_provider.get_vitals(plant_id)

        session = self._session_dao.load(plant_id, problem)
        if session is None:
            session = self._session_dao.create(plant_id, problem)
            logger.info("创建诊断会话 %s (plant=%s)", session.session_id, plant_id)
            self._report_progress(f"创建会话: {session.session_id}")
        else:
            logger.info("继续已有会话 %s (plant=%s)", session.session_id, plant_id)
            self._report_progress(f"继续已有会话: {session.session_id}")

        with self._session_dao.lock(session.session_id):
            session = self._require_session(session.session_id)
            if session.status == SessionStatus.PENDING_USER_INPUT:
                # 仍在等待用户回复，直接返回待回答的问题
                return session.to_view()
            if session.status.is_terminal:
                raise SessionStateError(f"会话 {session.session_id} 已结束 ({session.status.value})")
            return self._run_loop(session, vitals)

    def resume(self, session_id: str, reply: str) -> SessionView:
        """提交用户回复并继续诊断

        Args:
            session_id: 会话 ID
            reply: 用户回复

        Returns:
            本次调用结束后的会话视图

        Raises:
            NotFoundError: 会话不存在
            SessionStateError: 会话不在等待回复状态（包括重复回复）
            SessionBusyError: 会话正被其他调用处理
            StorageError: 存储不可用
        """
        if not reply or not reply.strip():
            raise ValueError("回复内容不能为空")

        session = self._require_session(session_id)

        with self._session_dao.lock(session_id):
            session = self._require_session(session_id)
            if session.status != SessionStatus.PENDING_USER_INPUT:
                raise SessionStateError(
                    f"会话 {session_id} 当前状态为 {session.status.value}，不接受回复"
                )

            vitals = self._plant_provider.get_vitals(session.plant_id)
            self._session_dao.append_turn(
                session_id,
                ConversationTurn(role=TurnRole.USER, text=reply),
                new_status=SessionStatus.IN_PROGRESS,
            )
            logger.info("会话 %s 收到用户回复", session_id)
            session = self._require_session(session_id)
            return self._run_loop(session, vitals)

    def get_history(self, plant_id: str) -> List[SessionSummary]:
        """获取某植物的诊断历史（最新在前）"""
        return self._session_dao.list_for_plant(plant_id)

    def get_session(self, session_id: str) -> DiagnosticSession:
        """获取完整会话

        Raises:
            NotFoundError: 会话不存在
        """
        return self._require_session(session_id)

    # ===== 内部方法 =====

    def _require_session(self, session_id: str) -> DiagnosticSession:
        session = self._session_dao.get(session_id)
        if session is None:
            raise NotFoundError(f"会话不存在: {session_id}")
        return session

    def _run_loop(self, session: DiagnosticSession, vitals: Optional[PlantVitals]) -> SessionView:
        """诊断循环：直到提问、结论或失败"""
        self_directed_turns = 0

        while True:
            payload = self._context_builder.build(session, vitals)

            try:
                action = self._decide(payload)
            except (ReasoningServiceError, SandboxError) as e:
                return self._fail(session, e)

            # 已执行上限次数的自驱动动作后，下一个自驱动动作使会话失败
            if action.is_self_directed:
                if self_directed_turns >= self._max_self_directed_turns:
                    return self._fail(session, LoopExceededError(self._max_self_directed_turns))
                self_directed_turns += 1

            self._report_progress(f"执行动作: {action.tag.value}")
            try:
                outcome = self._dispatcher.dispatch(session, action)
            except NotFoundError as e:
                return self._fail(session, e)

            session = outcome.session
            if outcome.vitals is not None:
                vitals = outcome.vitals

            if not outcome.continue_loop:
                return session.to_view()

    def _decide(self, payload: Dict[str, Any]) -> ActionDescriptor:
        """生成并执行决策脚本，语法或运行时错误时带上错误信息重新生成

        Raises:
            ReasoningServiceError: 推理服务失败
            SandboxError: 脚本执行失败且无法自我修正
        """
        context = payload
        corrections = 0

        while True:
            self._report_progress("推理服务思考中...")
            script = self._reasoning_client.generate(context)

            try:
                return self._sandbox.execute(script, context)
            except SandboxError as e:
                if not e.is_correctable or corrections >= self._max_self_corrections:
                    raise
                corrections += 1
                logger.warning("决策脚本执行失败 (%s)，重新生成: %s", e.kind, e.message)
                self._report_progress(f"脚本执行失败 ({e.kind})，重新生成 ({corrections}/{self._max_self_corrections})...")
                context = self._context_builder.with_error(payload, e)

    def _fail(self, session: DiagnosticSession, error: PlantDiagError) -> SessionView:
        """将会话标记为失败（保留已有历史）"""
        failure = SessionFailure(code=error.code, message=error.message)
        logger.warning("会话 %s 失败 [%s]: %s", session.session_id, failure.code, failure.message)
        self._report_progress(f"诊断失败: {failure.message}")

        self._session_dao.set_status(session.session_id, SessionStatus.FAILED, failure=failure)
        return self._require_session(session.session_id).to_view()
