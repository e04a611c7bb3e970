"""共享渲染逻辑

CLI 使用的渲染方法，所有方法返回 Rich 可渲染对象，由调用方决定如何输出。
"""
import json
from typing import List, Union

from rich.console import Console, Group
from rich.markdown import Markdown
from rich.panel import Panel
from rich.text import Text

from plantdiag.models import (
    DiagnosticSession,
    Plant,
    SessionFailure,
    SessionStatus,
    SessionSummary,
    SessionView,
    TurnRole,
)


class DiagnosisRenderer:
    """诊断结果渲染器"""

    LOGO = """
██████╗ ██╗      █████╗ ███╗   ██╗████████╗      ██████╗ ██╗ █████╗  ██████╗
██╔══██╗██║     ██╔══██╗████╗  ██║╚══██╔══╝      ██╔══██╗██║██╔══██╗██╔════╝
██████╔╝██║     ███████║██╔██╗ ██║   ██║   █████╗██║  ██║██║███████║██║  ███╗
██╔═══╝ ██║     ██╔══██║██║╚██╗██║   ██║   ╚════╝██║  ██║██║██╔══██║██║   ██║
██║     ███████╗██║  ██║██║ ╚████║   ██║         ██████╔╝██║██║  ██║╚██████╔╝
╚═╝     ╚══════╝╚═╝  ╚═╝╚═╝  ╚═══╝   ╚═╝         ╚═════╝ ╚═╝╚═╝  ╚═╝ ╚═════╝
"""

    # 状态显示文字和样式
    STATUS_STYLES = {
        SessionStatus.IN_PROGRESS: ("进行中", "cyan"),
        SessionStatus.PENDING_USER_INPUT: ("等待回复", "yellow"),
        SessionStatus.COMPLETED: ("已完成", "green"),
        SessionStatus.FAILED: ("失败", "red"),
    }

    def __init__(self, console: Console = None):
        """初始化渲染器

        Args:
            console: Rich Console 实例，用于获取终端宽度等信息
        """
        self.console = console or Console()

    def get_logo(self) -> str:
        """获取 LOGO"""
        return self.LOGO.strip()

    def _panel_width(self) -> int:
        return min(100, self.console.width) if self.console else 100

    def render_status(self, status: SessionStatus) -> Text:
        """渲染会话状态标签"""
        label, style = self.STATUS_STYLES[SessionStatus(status)]
        return Text(label, style=f"bold {style}")

    def render_question(self, question: str, session_id: str) -> Panel:
        """渲染向用户的提问

        Args:
            question: 问题内容
            session_id: 会话 ID（提示用户如何回复）

        Returns:
            Rich Panel 对象
        """
        hint = Text()
        hint.append("回复方式: ", style="dim")
        hint.append(f"python -m plantdiag reply {session_id} \"<你的回答>\"", style="bold")

        return Panel(
            Group(Text(question), Text(""), hint),
            title="? 需要更多信息",
            title_align="left",
            border_style="yellow",
            width=self._panel_width(),
            padding=(1, 2),
        )

    def render_conclusion(self, finding: str, recommendation: str) -> Panel:
        """渲染诊断结论

        Args:
            finding: 诊断结论
            recommendation: 处理建议

        Returns:
            Rich Panel 对象
        """
        info = Text()
        info.append("结论: ", style="bold")
        info.append(f"{finding}\n", style="green bold")

        md = Markdown(f"### 处理建议\n\n{recommendation}", justify="left")

        return Panel(
            Group(info, md),
            title="✓ 诊断完成",
            title_align="left",
            border_style="green",
            width=self._panel_width(),
            padding=(1, 2),
        )

    def render_failure(self, failure: SessionFailure) -> Panel:
        """渲染失败原因"""
        content = Text()
        content.append("错误类型: ", style="bold")
        content.append(f"{failure.code}\n", style="red")
        content.append(failure.message)

        return Panel(
            content,
            title="✗ 诊断失败",
            title_align="left",
            border_style="red",
            width=self._panel_width(),
            padding=(1, 2),
        )

    def render_view(self, view: SessionView) -> Union[Panel, Text]:
        """按会话状态渲染单次调用的结果"""
        if view.status == SessionStatus.PENDING_USER_INPUT and view.question:
            return self.render_question(view.question, view.session_id)
        if view.status == SessionStatus.COMPLETED:
            return self.render_conclusion(view.finding or "", view.recommendation or "")
        if view.status == SessionStatus.FAILED and view.failure:
            return self.render_failure(view.failure)
        return Text(f"会话 {view.session_id} 状态: {view.status.value}", style="dim")

    def render_history(self, summaries: List[SessionSummary]) -> Group:
        """渲染诊断历史

        Args:
            summaries: 会话摘要列表

        Returns:
            Rich Group 对象
        """
        if not summaries:
            return Group(Text("暂无诊断记录", style="dim"))

        parts = []
        for summary in summaries:
            line = Text()
            line.append(f"{summary.session_id}", style="bold cyan")
            line.append("  ")
            line.append_text(self.render_status(summary.status))
            line.append(f"  {summary.created_at:%Y-%m-%d %H:%M}", style="dim")
            parts.append(line)

            parts.append(Text(f"    问题: {summary.problem}"))
            if summary.finding:
                parts.append(Text(f"    结论: {summary.finding}", style="green"))
            if summary.failure_code:
                parts.append(Text(f"    失败: {summary.failure_code}", style="red"))
            parts.append(
                Text(
                    f"    对话 {summary.turn_count} 轮 │ 假设记录 {summary.hypothesis_count} 条",
                    style="dim",
                )
            )
            parts.append(Text(""))

        return Group(*parts)

    def render_session_detail(self, session: DiagnosticSession) -> Group:
        """渲染完整会话（对话、假设记录、状况快照）"""
        header = Text()
        header.append(f"{session.session_id}", style="bold cyan")
        header.append("  ")
        header.append_text(self.render_status(session.status))
        parts = [header, Text(f"植物: {session.plant_id}"), Text(f"问题: {session.problem}"), Text("")]

        parts.append(Text("对话", style="bold"))
        if session.turns:
            for turn in session.turns:
                speaker = Text()
                if turn.role == TurnRole.AI:
                    speaker.append("  AI  ", style="bold blue")
                else:
                    speaker.append("  你  ", style="bold magenta")
                speaker.append(turn.text)
                parts.append(speaker)
        else:
            parts.append(Text("  无", style="dim"))
        parts.append(Text(""))

        if session.hypotheses:
            parts.append(Text("假设记录", style="bold"))
            for entry in session.hypotheses:
                state = json.dumps(entry.state, ensure_ascii=False, sort_keys=True)
                parts.append(Text(f"  [{entry.seq}] {state}", style="dim"))
            parts.append(Text(""))

        if session.vitals_log:
            parts.append(Text("状况快照", style="bold"))
            for snapshot in session.vitals_log:
                reason = f" ({snapshot.reason})" if snapshot.reason else ""
                parts.append(
                    Text(f"  [{snapshot.seq}] {snapshot.created_at:%H:%M:%S}{reason}", style="dim")
                )
            parts.append(Text(""))

        parts.append(self.render_view(session.to_view()))
        return Group(*parts)

    def render_plants(self, plants: List[Plant]) -> Group:
        """渲染植物档案列表"""
        if not plants:
            return Group(Text("暂无植物档案，使用 plant-add 添加", style="dim"))

        parts = []
        for plant in plants:
            line = Text()
            line.append(f"{plant.plant_id}", style="bold cyan")
            line.append(f"  {plant.name}")
            parts.append(line)
            care = plant.care_requirements
            parts.append(
                Text(
                    f"    光照: {care.light} │ 浇水: {care.water} │ 湿度: {care.humidity} │ 温度: {care.temperature}",
                    style="dim",
                )
            )
        return Group(*parts)
