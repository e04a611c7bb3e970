"""决策脚本沙箱"""

from plantdiag.core.sandbox.executor import SandboxExecutor
from plantdiag.core.sandbox.runner import check_script

__all__ = [
    "SandboxExecutor",
    "check_script",
]
