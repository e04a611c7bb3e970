"""诊断内核异常定义

所有异常都带有稳定的 code，会话失败时写入 SessionFailure.code。
"""
from typing import Optional


class PlantDiagError(Exception):
    """诊断内核异常基类"""

    code = "error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class StorageError(PlantDiagError):
    """会话存储不可用（致命，本次调用中止）"""

    code = "storage"


class NotFoundError(PlantDiagError):
    """植物或会话不存在"""

    code = "not_found"


class SessionBusyError(PlantDiagError):
    """会话正被另一个调用处理"""

    code = "session_busy"


class SessionStateError(PlantDiagError):
    """会话状态不允许该操作（非法状态迁移、重复回复等）"""

    code = "session_state"


class ReasoningServiceError(PlantDiagError):
    """推理服务调用失败

    Attributes:
        kind: "transient"（重试耗尽）或 "permanent"（不可重试）
        attempts: 实际尝试次数
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"

    def __init__(self, kind: str, message: str, attempts: int = 1):
        super().__init__(message)
        self.kind = kind
        self.attempts = attempts

    @property
    def code(self) -> str:
        return f"reasoning.{self.kind}"


class SandboxError(PlantDiagError):
    """沙箱执行失败

    Attributes:
        kind: syntax / runtime / timeout / resource_limit / invalid_action
    """

    SYNTAX = "syntax"
    RUNTIME = "runtime"
    TIMEOUT = "timeout"
    RESOURCE_LIMIT = "resource_limit"
    INVALID_ACTION = "invalid_action"

    KINDS = (SYNTAX, RUNTIME, TIMEOUT, RESOURCE_LIMIT, INVALID_ACTION)

    # 可通过重新生成脚本修正的错误类型
    CORRECTABLE_KINDS = (SYNTAX, RUNTIME)

    def __init__(self, kind: str, message: str):
        if kind not in self.KINDS:
            raise ValueError(f"未知的沙箱错误类型: {kind}")
        super().__init__(message)
        self.kind = kind

    @property
    def code(self) -> str:
        return f"sandbox.{self.kind}"

    @property
    def is_correctable(self) -> bool:
        return self.kind in self.CORRECTABLE_KINDS


class LoopExceededError(PlantDiagError):
    """单次调用内连续自驱动轮次超过上限"""

    code = "loop_exceeded"

    def __init__(self, limit: int, message: Optional[str] = None):
        super().__init__(message or f"连续自驱动轮次超过上限 ({limit})")
        self.limit = limit
