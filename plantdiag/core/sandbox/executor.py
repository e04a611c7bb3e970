"""Sandbox Executor - 决策脚本隔离执行

每个脚本在一个全新的子解释器中执行（单次使用、无状态）：
- 空环境变量、临时工作目录、`-I` 隔离模式
- POSIX 下限制地址空间、CPU 时间，禁止写文件
- 墙钟超时由父进程强制，超时直接 kill
"""
import json
import logging
import os
import subprocess
import sys
import tempfile
import time
from pathlib import Path
from typing import Dict, Any, Optional, Union

from pydantic import ValidationError

from plantdiag.core.sandbox.runner import check_script
from plantdiag.exceptions import SandboxError
from plantdiag.models import ActionDescriptor, GeneratedScript

logger = logging.getLogger(__name__)


RUNNER_PATH = str(Path(__file__).with_name("runner.py"))


class SandboxExecutor:
    """沙箱执行器"""

    DEFAULT_TIMEOUT = 2.0  # 秒
    DEFAULT_MAX_OPERATIONS = 200_000
    DEFAULT_MEMORY_MB = 256
    DEFAULT_CPU_SECONDS = 2

    def __init__(
        self,
        timeout_seconds: float = DEFAULT_TIMEOUT,
        max_operations: int = DEFAULT_MAX_OPERATIONS,
        memory_mb: int = DEFAULT_MEMORY_MB,
        cpu_seconds: int = DEFAULT_CPU_SECONDS,
        python_executable: Optional[str] = None,
    ):
        """
        Args:
            timeout_seconds: 墙钟超时
            max_operations: 生成代码的执行步数上限
            memory_mb: 子进程地址空间上限（仅 POSIX）
            cpu_seconds: 子进程 CPU 时间上限（仅 POSIX）
            python_executable: 子进程使用的解释器，默认当前解释器
        """
        self.timeout_seconds = timeout_seconds
        self.max_operations = max_operations
        self.memory_mb = memory_mb
        self.cpu_seconds = cpu_seconds
        self.python_executable = python_executable or sys.executable

    @classmethod
    def from_config(cls, sandbox_config) -> "SandboxExecutor":
        return cls(
            timeout_seconds=sandbox_config.timeout_seconds,
            max_operations=sandbox_config.max_operations,
            memory_mb=sandbox_config.memory_mb,
            cpu_seconds=sandbox_config.cpu_seconds,
        )

    def execute(
        self,
        script: Union[GeneratedScript, str],
        context: Dict[str, Any],
    ) -> ActionDescriptor:
        """执行决策脚本

        Args:
            script: 决策脚本
            context: 注入脚本的 context

        Returns:
            脚本产出的唯一动作

        Raises:
            SandboxError: syntax / runtime / timeout / resource_limit / invalid_action
        """
        source = script.source if isinstance(script, GeneratedScript) else script

        # 父进程先做一次静态检查，明显违规的脚本不必启动子进程
        violation = check_script(source)
        if violation:
            kind, message = violation
            raise SandboxError(kind, message)

        request = json.dumps(
            {
                "source": source,
                "context": context,
                "max_operations": self.max_operations,
            },
            ensure_ascii=False,
        ).encode("utf-8")

        started = time.monotonic()
        returncode, stdout, stderr = self._run_child(request)
        logger.debug(
            "沙箱执行完成: returncode=%s, 耗时 %.3fs",
            returncode, time.monotonic() - started,
        )

        return self._parse_result(returncode, stdout, stderr)

    def _run_child(self, request: bytes):
        """启动子进程并等待结果

        Returns:
            (returncode, stdout, stderr)
        """
        command = [self.python_executable, "-I", RUNNER_PATH]

        with tempfile.TemporaryDirectory(prefix="plantdiag-sandbox-") as workdir:
            proc = subprocess.Popen(
                command,
                cwd=workdir,
                env=self._child_env(),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                preexec_fn=self._posix_limits() if sys.platform != "win32" else None,
                close_fds=True,
            )
            try:
                stdout, stderr = proc.communicate(request, timeout=self.timeout_seconds)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.communicate()
                raise SandboxError(
                    SandboxError.TIMEOUT,
                    f"脚本执行超过 {self.timeout_seconds:g}s，已终止",
                )

        return proc.returncode, stdout, stderr

    def _child_env(self) -> Dict[str, str]:
        if sys.platform == "win32":
            # Windows 下解释器启动需要 SYSTEMROOT
            return {"SYSTEMROOT": os.environ.get("SYSTEMROOT", "")}
        return {}

    def _posix_limits(self):
        import resource

        cpu_seconds = self.cpu_seconds
        memory_bytes = self.memory_mb * 1024 * 1024

        def _set(limit: int, value: int) -> None:
            # 不能超过当前硬上限
            _, hard = resource.getrlimit(limit)
            if hard != resource.RLIM_INFINITY:
                value = min(value, hard)
            resource.setrlimit(limit, (value, value))

        def _limits() -> None:
            _set(resource.RLIMIT_CPU, cpu_seconds)
            _set(resource.RLIMIT_AS, memory_bytes)
            _set(resource.RLIMIT_FSIZE, 0)

        return _limits

    def _parse_result(self, returncode: int, stdout: bytes, stderr: bytes) -> ActionDescriptor:
        """解析子进程输出"""
        lines = [line for line in stdout.decode("utf-8", errors="replace").splitlines() if line.strip()]
        result = None
        if lines:
            try:
                result = json.loads(lines[-1])
            except json.JSONDecodeError:
                result = None

        if not isinstance(result, dict):
            error_text = stderr.decode("utf-8", errors="replace").strip()
            # 被信号杀死（如 RLIMIT_CPU 触发 SIGXCPU）或启动时内存不足
            if returncode < 0 or "MemoryError" in error_text:
                raise SandboxError(
                    SandboxError.RESOURCE_LIMIT,
                    f"沙箱进程超出资源限制 (returncode={returncode})",
                )
            last_line = error_text.splitlines()[-1] if error_text else "无输出"
            raise SandboxError(
                SandboxError.RUNTIME,
                f"沙箱进程异常退出 (returncode={returncode}): {last_line}",
            )

        if not result.get("ok"):
            kind = result.get("kind", SandboxError.RUNTIME)
            if kind not in SandboxError.KINDS:
                kind = SandboxError.RUNTIME
            raise SandboxError(kind, result.get("message", ""))

        try:
            return ActionDescriptor.model_validate(result.get("action") or {})
        except ValidationError as e:
            errors = "; ".join(err["msg"] for err in e.errors())
            raise SandboxError(SandboxError.INVALID_ACTION, f"动作不合法: {errors}") from e
