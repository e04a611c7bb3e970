"""CLI 主程序

使用 Rich 库美化 CLI 输出。每条命令只推进一次诊断调用，然后退出。

运行方式：
    python -m plantdiag diagnose <plant_id> --problem "叶子发黄"
    python -m plantdiag reply <session_id> "每天都浇水"
    python -m plantdiag history <plant_id>
"""
from typing import Optional

from rich.console import Console
from rich.padding import Padding
from rich.text import Text

from plantdiag.cli.rendering import DiagnosisRenderer
from plantdiag.core.dialogue_manager import DiagnosticDialogueManager
from plantdiag.dao import PlantDAO, SessionDAO
from plantdiag.dao.base import get_default_db_path
from plantdiag.exceptions import PlantDiagError
from plantdiag.models import CareRequirements, SessionView
from plantdiag.scripts.init_db import init_database
from plantdiag.utils.config import Config, load_config


class DiagnosisCLI:
    """诊断命令行

    植物档案和历史查询只依赖数据库；diagnose / reply 需要推理服务配置。
    所有命令返回退出码（0 成功，1 失败）。
    """

    def __init__(
        self,
        db_path: Optional[str] = None,
        config_path: Optional[str] = None,
        console: Optional[Console] = None,
    ):
        """
        Args:
            db_path: 数据库路径（优先于配置文件）
            config_path: 配置文件路径
            console: Rich Console 实例
        """
        self.console = console or Console()
        self.renderer = DiagnosisRenderer(self.console)
        self._config_path = config_path
        self._config: Optional[Config] = None
        self._explicit_db_path = db_path
        self._dialogue_manager: Optional[DiagnosticDialogueManager] = None

    # ===== 依赖 =====

    @property
    def config(self) -> Config:
        if self._config is None:
            self._config = load_config(self._config_path)
        return self._config

    @property
    def db_path(self) -> str:
        if self._explicit_db_path:
            return self._explicit_db_path
        try:
            configured = self.config.storage.db_path
        except FileNotFoundError:
            configured = None
        return configured or get_default_db_path()

    @property
    def dialogue_manager(self) -> DiagnosticDialogueManager:
        if self._dialogue_manager is None:
            self._dialogue_manager = DiagnosticDialogueManager.from_config(
                self.config,
                db_path=self.db_path,
                progress_callback=self._print_progress,
            )
        return self._dialogue_manager

    def _ensure_schema(self) -> str:
        return init_database(self.db_path, verbose=False)

    # ===== 输出 =====

    def _print_indented(self, content, num_spaces: int = 2) -> None:
        """打印带缩进的 Rich 对象"""
        self.console.print(Padding(content, (0, 0, 0, num_spaces)))

    def _print_progress(self, message: str):
        """打印进度信息"""
        self._print_indented(Text(f"→ {message}", style="dim"))

    def _print_error(self, message: str):
        self.console.print(Text(f"[ERROR] {message}", style="red"))

    # ===== 命令 =====

    def add_plant(self, name: str, care_requirements: CareRequirements) -> int:
        """新增植物档案"""
        try:
            self._ensure_schema()
            plant = PlantDAO(self.db_path).add(name, care_requirements)
        except PlantDiagError as e:
            self._print_error(e.message)
            return 1
        self.console.print(Text(f"[OK] 已添加植物: {plant.name} ({plant.plant_id})", style="green"))
        return 0

    def list_plants(self) -> int:
        """列出植物档案"""
        try:
            self._ensure_schema()
            plants = PlantDAO(self.db_path).list_all()
        except PlantDiagError as e:
            self._print_error(e.message)
            return 1
        self.console.print(self.renderer.render_plants(plants))
        return 0

    def diagnose(self, plant_id: str, problem: str, interactive: bool = False) -> int:
        """开始（或继续）诊断"""
        try:
            self._ensure_schema()
            self._print_indented(Text("正在分析问题...", style="dim"))
            view = self.dialogue_manager.start(plant_id, problem)
        except (PlantDiagError, ValueError, FileNotFoundError) as e:
            self._print_error(getattr(e, "message", str(e)))
            return 1
        return self._show_view(view, interactive)

    def reply(self, session_id: str, text: str, interactive: bool = False) -> int:
        """提交回复"""
        try:
            self._ensure_schema()
            self._print_indented(Text("正在处理回复...", style="dim"))
            view = self.dialogue_manager.resume(session_id, text)
        except (PlantDiagError, ValueError, FileNotFoundError) as e:
            self._print_error(getattr(e, "message", str(e)))
            return 1
        return self._show_view(view, interactive)

    def history(self, plant_id: str) -> int:
        """查看某植物的诊断历史"""
        try:
            self._ensure_schema()
            summaries = SessionDAO(self.db_path).list_for_plant(plant_id)
        except PlantDiagError as e:
            self._print_error(e.message)
            return 1
        self.console.print(self.renderer.render_history(summaries))
        return 0

    def recent_sessions(self, limit: int = 10) -> int:
        """查看最近更新的会话"""
        try:
            self._ensure_schema()
            summaries = SessionDAO(self.db_path).list_recent(limit=limit)
        except PlantDiagError as e:
            self._print_error(e.message)
            return 1
        self.console.print(self.renderer.render_history(summaries))
        return 0

    def show(self, session_id: str) -> int:
        """查看完整会话"""
        try:
            self._ensure_schema()
            session = SessionDAO(self.db_path).get(session_id)
        except PlantDiagError as e:
            self._print_error(e.message)
            return 1
        if session is None:
            self._print_error(f"会话不存在: {session_id}")
            return 1
        self.console.print(self.renderer.render_session_detail(session))
        return 0

    def _show_view(self, view: SessionView, interactive: bool) -> int:
        """渲染调用结果；交互模式下持续提问直到会话结束"""
        while True:
            self.console.print()
            self.console.print(self.renderer.render_view(view))

            if not (interactive and view.awaiting_reply):
                return 1 if view.failure else 0

            answer = self.console.input("[bold blue]> [/bold blue]").strip()
            if answer in ("/exit", "/quit"):
                return 0
            if not answer:
                continue
            try:
                view = self.dialogue_manager.resume(view.session_id, answer)
            except (PlantDiagError, ValueError) as e:
                self._print_error(getattr(e, "message", str(e)))
                return 1
