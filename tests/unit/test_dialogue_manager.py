"""DiagnosticDialogueManager 单元测试

推理客户端和沙箱使用 Mock，会话存储使用临时 SQLite 数据库。
"""
import pytest
import tempfile
import os
from pathlib import Path
from unittest.mock import Mock
import sys

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from plantdiag.core.dialogue_manager import DiagnosticDialogueManager
from plantdiag.core.reasoning_client import ReasoningClient
from plantdiag.core.sandbox import SandboxExecutor
from plantdiag.dao import PlantDAO, SessionDAO
from plantdiag.exceptions import (
    NotFoundError,
    ReasoningServiceError,
    SandboxError,
    SessionBusyError,
    SessionStateError,
)
from plantdiag.models import (
    ActionDescriptor,
    ActionTag,
    GeneratedScript,
    SessionStatus,
    TurnRole,
)
from plantdiag.scripts.init_db import init_database


def ask(question):
    return ActionDescriptor(tag=ActionTag.ASK_USER, payload={"question": question})


def conclude(finding, recommendation):
    return ActionDescriptor(
        tag=ActionTag.CONCLUDE,
        payload={"finding": finding, "recommendation": recommendation},
    )


def log_state(**state):
    return ActionDescriptor(tag=ActionTag.LOG_STATE, payload={"state": state})


def vitals(reason=""):
    return ActionDescriptor(tag=ActionTag.GET_PLANT_VITALS, payload={"reason": reason})


class Harness:
    """组装 DialogueManager 及其依赖"""

    def __init__(self, db_path, max_self_directed_turns=10, max_self_corrections=1):
        self.session_dao = SessionDAO(db_path)
        self.plant_dao = PlantDAO(db_path)
        self.plant = self.plant_dao.add("龟背竹")

        self.reasoning = Mock(spec=ReasoningClient)
        self.reasoning.generate.return_value = GeneratedScript(source="# generated")
        self.sandbox = Mock(spec=SandboxExecutor)
        self.progress = []

        self.manager = DiagnosticDialogueManager(
            session_dao=self.session_dao,
            plant_provider=self.plant_dao,
            reasoning_client=self.reasoning,
            sandbox_executor=self.sandbox,
            max_self_directed_turns=max_self_directed_turns,
            max_self_corrections=max_self_corrections,
            progress_callback=self.progress.append,
        )

    def actions(self, *items):
        """沙箱依次返回 items（Exception 实例会被抛出）"""
        self.sandbox.execute.side_effect = list(items)


@pytest.fixture
def db_path():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = os.path.join(tmpdir, "test.db")
        init_database(path, verbose=False)
        yield path


@pytest.fixture
def harness(db_path):
    return Harness(db_path)


class TestStart:
    """start 测试"""

    def test_new_session_asks_user(self, harness):
        """测试: 新会话第一步提问，状态变为等待回复"""
        harness.actions(ask("多久浇一次水？"))

        view = harness.manager.start(harness.plant.plant_id, "叶子发黄")

        assert view.status == SessionStatus.PENDING_USER_INPUT
        assert view.question == "多久浇一次水？"
        assert view.awaiting_reply

        session = harness.session_dao.get(view.session_id)
        assert len(session.turns) == 1
        assert session.turns[0].role == TurnRole.AI

    def test_context_passed_to_sandbox(self, harness):
        """测试: 沙箱收到包含问题和植物状况的 context"""
        harness.actions(ask("q"))

        harness.manager.start(harness.plant.plant_id, "叶子发黄")

        script, context = harness.sandbox.execute.call_args.args
        assert context["problem"] == "叶子发黄"
        assert context["plant_vitals"]["name"] == "龟背竹"
        assert context["turns"] == []

    def test_start_existing_pending_session(self, harness):
        """测试: 已在等待回复的会话再次 start 时直接返回问题"""
        harness.actions(ask("多久浇一次水？"))
        first = harness.manager.start(harness.plant.plant_id, "叶子发黄")

        second = harness.manager.start(harness.plant.plant_id, "  叶子发黄 ")

        assert second.session_id == first.session_id
        assert second.question == "多久浇一次水？"
        assert harness.sandbox.execute.call_count == 1

    def test_start_after_completed_creates_new_session(self, harness):
        """测试: 旧会话完成后同一问题开始新会话"""
        harness.actions(conclude("浇水过多", "减少浇水"), ask("q"))
        first = harness.manager.start(harness.plant.plant_id, "叶子发黄")

        second = harness.manager.start(harness.plant.plant_id, "叶子发黄")

        assert first.status == SessionStatus.COMPLETED
        assert second.session_id != first.session_id

    def test_unknown_plant(self, harness):
        """测试: 植物不存在"""
        with pytest.raises(NotFoundError):
            harness.manager.start("plant_missing", "叶子发黄")

        harness.reasoning.generate.assert_not_called()

    def test_blank_problem(self, harness):
        """测试: 问题描述为空"""
        with pytest.raises(ValueError):
            harness.manager.start(harness.plant.plant_id, "   ")

    def test_start_while_locked(self, harness):
        """测试: 会话正被其他调用处理"""
        session = harness.session_dao.create(harness.plant.plant_id, "叶子发黄")
        harness.session_dao.acquire_lock(session.session_id)

        with pytest.raises(SessionBusyError):
            harness.manager.start(harness.plant.plant_id, "叶子发黄")


class TestResume:
    """resume 测试"""

    def test_reply_then_conclude(self, harness):
        """测试: 回复后得出结论"""
        harness.actions(ask("多久浇一次水？"), conclude("浇水过多", "减少浇水频率"))
        view = harness.manager.start(harness.plant.plant_id, "叶子发黄")

        result = harness.manager.resume(view.session_id, "每天都浇")

        assert result.status == SessionStatus.COMPLETED
        assert result.finding == "浇水过多"
        assert result.recommendation == "减少浇水频率"
        assert result.question is None

        session = harness.session_dao.get(view.session_id)
        assert [(t.role, t.text) for t in session.turns] == [
            (TurnRole.AI, "多久浇一次水？"),
            (TurnRole.USER, "每天都浇"),
        ]

    def test_reply_visible_in_context(self, harness):
        """测试: 用户回复出现在下一轮 context 中"""
        harness.actions(ask("多久浇一次水？"), conclude("f", "r"))
        view = harness.manager.start(harness.plant.plant_id, "叶子发黄")

        harness.manager.resume(view.session_id, "每天都浇")

        _, context = harness.sandbox.execute.call_args.args
        assert context["turns"][-1]["text"] == "每天都浇"
        assert context["turns"][-1]["role"] == "User"

    def test_second_resume_rejected(self, harness):
        """测试: 同一个问题不能回复两次"""
        harness.actions(ask("q1"), ask("q2"))
        view = harness.manager.start(harness.plant.plant_id, "叶子发黄")
        harness.manager.resume(view.session_id, "第一次回复")

        harness.actions(conclude("f", "r"))
        harness.manager.resume(view.session_id, "对 q2 的回复")

        with pytest.raises(SessionStateError):
            harness.manager.resume(view.session_id, "重复回复")

    def test_resume_completed_session(self, harness):
        """测试: 已完成的会话不接受回复"""
        harness.actions(conclude("f", "r"))
        view = harness.manager.start(harness.plant.plant_id, "叶子发黄")

        with pytest.raises(SessionStateError):
            harness.manager.resume(view.session_id, "reply")

    def test_resume_unknown_session(self, harness):
        """测试: 会话不存在"""
        with pytest.raises(NotFoundError):
            harness.manager.resume("sess_missing", "reply")

    def test_blank_reply(self, harness):
        """测试: 回复为空"""
        harness.actions(ask("q"))
        view = harness.manager.start(harness.plant.plant_id, "叶子发黄")

        with pytest.raises(ValueError):
            harness.manager.resume(view.session_id, "")

    def test_resume_while_locked(self, harness):
        """测试: 并发回复时只有一个能获得锁"""
        harness.actions(ask("q"))
        view = harness.manager.start(harness.plant.plant_id, "叶子发黄")
        harness.session_dao.acquire_lock(view.session_id)

        with pytest.raises(SessionBusyError):
            harness.manager.resume(view.session_id, "reply")

        session = harness.session_dao.get(view.session_id)
        assert len(session.turns) == 1

    def test_lock_released_after_call(self, harness):
        """测试: 调用结束后锁被释放"""
        harness.actions(ask("q"))
        view = harness.manager.start(harness.plant.plant_id, "叶子发黄")

        token = harness.session_dao.acquire_lock(view.session_id)

        assert harness.session_dao.release_lock(view.session_id, token)


class TestSelfDirectedLoop:
    """自驱动循环测试"""

    def test_self_directed_actions_continue(self, harness):
        """测试: LOG_STATE / GET_PLANT_VITALS 后继续下一轮"""
        harness.actions(
            log_state(suspect="overwatering"),
            vitals("确认浇水需求"),
            ask("盆底有排水孔吗？"),
        )

        view = harness.manager.start(harness.plant.plant_id, "叶子发黄")

        assert view.status == SessionStatus.PENDING_USER_INPUT
        assert harness.sandbox.execute.call_count == 3

        session = harness.session_dao.get(view.session_id)
        assert session.hypotheses[0].state == {"suspect": "overwatering"}
        assert session.vitals_log[0].reason == "确认浇水需求"
        assert session.vitals_log[0].vitals.name == "龟背竹"

    def test_logged_state_visible_in_next_context(self, harness):
        """测试: 下一轮 context 包含刚记录的假设"""
        harness.actions(log_state(suspect="overwatering"), ask("q"))

        harness.manager.start(harness.plant.plant_id, "叶子发黄")

        _, context = harness.sandbox.execute.call_args.args
        assert context["hypotheses"][0]["state"] == {"suspect": "overwatering"}

    def test_loop_exceeded(self, db_path):
        """测试: 连续自驱动轮次超过上限"""
        harness = Harness(db_path, max_self_directed_turns=3)
        harness.sandbox.execute.return_value = log_state(step=1)

        view = harness.manager.start(harness.plant.plant_id, "叶子发黄")

        assert view.status == SessionStatus.FAILED
        assert view.failure.code == "loop_exceeded"
        # 第 4 个自驱动动作触发失败，且不会被执行
        assert harness.sandbox.execute.call_count == 4

        session = harness.session_dao.get(view.session_id)
        assert len(session.hypotheses) == 3

    def test_loop_at_ceiling_then_ask(self, db_path):
        """测试: 恰好达到上限次数的自驱动动作后提问，会话正常等待回复"""
        harness = Harness(db_path, max_self_directed_turns=3)
        harness.actions(
            log_state(step=1),
            vitals("确认光照"),
            log_state(step=2),
            ask("多久浇一次水？"),
        )

        view = harness.manager.start(harness.plant.plant_id, "叶子发黄")

        assert view.status == SessionStatus.PENDING_USER_INPUT
        assert view.question == "多久浇一次水？"
        assert view.failure is None

        session = harness.session_dao.get(view.session_id)
        assert len(session.hypotheses) == 2
        assert len(session.vitals_log) == 1

    def test_loop_ceiling_resets_each_invocation(self, db_path):
        """测试: 上限按单次调用计数"""
        harness = Harness(db_path, max_self_directed_turns=2)
        harness.actions(log_state(step=1), log_state(step=2), ask("q1"))
        view = harness.manager.start(harness.plant.plant_id, "叶子发黄")

        harness.actions(log_state(step=3), log_state(step=4), conclude("f", "r"))
        result = harness.manager.resume(view.session_id, "每天都浇")

        assert result.status == SessionStatus.COMPLETED
        assert len(harness.session_dao.get(view.session_id).hypotheses) == 4


class TestFailures:
    """失败处理测试"""

    def test_sandbox_timeout_fails_session(self, harness):
        """测试: 沙箱超时，会话失败且历史不变"""
        harness.actions(ask("多久浇一次水？"))
        view = harness.manager.start(harness.plant.plant_id, "叶子发黄")
        before = harness.session_dao.get(view.session_id)

        harness.actions(SandboxError(SandboxError.TIMEOUT, "超时"))
        result = harness.manager.resume(view.session_id, "每天都浇")

        assert result.status == SessionStatus.FAILED
        assert result.failure.code == "sandbox.timeout"

        after = harness.session_dao.get(view.session_id)
        # 只多了用户回复，没有其他记录
        assert after.turns[:len(before.turns)] == before.turns
        assert len(after.turns) == len(before.turns) + 1
        assert after.hypotheses == before.hypotheses

    def test_timeout_is_not_corrected(self, harness):
        """测试: 超时不触发重新生成"""
        harness.actions(SandboxError(SandboxError.TIMEOUT, "超时"))

        harness.manager.start(harness.plant.plant_id, "叶子发黄")

        assert harness.reasoning.generate.call_count == 1

    def test_runtime_error_self_corrects(self, harness):
        """测试: 运行时错误带错误信息重新生成一次"""
        harness.actions(
            SandboxError(SandboxError.RUNTIME, "第 2 行: NameError: name 'x' is not defined"),
            ask("多久浇一次水？"),
        )

        view = harness.manager.start(harness.plant.plant_id, "叶子发黄")

        assert view.status == SessionStatus.PENDING_USER_INPUT
        assert harness.reasoning.generate.call_count == 2
        retry_payload = harness.reasoning.generate.call_args.args[0]
        assert retry_payload["previous_attempt_error"]["kind"] == "runtime"

    def test_self_correction_limit(self, harness):
        """测试: 重新生成后仍然出错则失败"""
        harness.actions(
            SandboxError(SandboxError.SYNTAX, "第 1 行: invalid syntax"),
            SandboxError(SandboxError.SYNTAX, "第 1 行: invalid syntax"),
        )

        view = harness.manager.start(harness.plant.plant_id, "叶子发黄")

        assert view.status == SessionStatus.FAILED
        assert view.failure.code == "sandbox.syntax"
        assert harness.reasoning.generate.call_count == 2

    def test_reasoning_failure(self, harness):
        """测试: 推理服务不可用"""
        harness.reasoning.generate.side_effect = ReasoningServiceError(
            ReasoningServiceError.TRANSIENT, "unavailable", attempts=5
        )

        view = harness.manager.start(harness.plant.plant_id, "叶子发黄")

        assert view.status == SessionStatus.FAILED
        assert view.failure.code == "reasoning.transient"
        harness.sandbox.execute.assert_not_called()

    def test_failed_session_keeps_history(self, harness):
        """测试: 失败前记录的假设保留"""
        harness.actions(
            log_state(suspect="pests"),
            SandboxError(SandboxError.INVALID_ACTION, "脚本必须恰好产出一个动作"),
        )

        view = harness.manager.start(harness.plant.plant_id, "叶子发黄")

        session = harness.session_dao.get(view.session_id)
        assert session.status == SessionStatus.FAILED
        assert session.hypotheses[0].state == {"suspect": "pests"}

    def test_progress_reported(self, harness):
        """测试: 进度回调"""
        harness.actions(ask("q"))

        harness.manager.start(harness.plant.plant_id, "叶子发黄")

        assert any("ASK_USER" in message for message in harness.progress)


class TestQueries:
    """查询接口测试"""

    def test_get_history(self, harness):
        """测试: 诊断历史"""
        harness.actions(conclude("f", "r"), ask("q"))
        harness.manager.start(harness.plant.plant_id, "叶子发黄")
        harness.manager.start(harness.plant.plant_id, "有褐色斑点")

        history = harness.manager.get_history(harness.plant.plant_id)

        assert [s.problem for s in history] == ["有褐色斑点", "叶子发黄"]

    def test_get_session_not_found(self, harness):
        """测试: 会话不存在"""
        with pytest.raises(NotFoundError):
            harness.manager.get_session("sess_missing")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
