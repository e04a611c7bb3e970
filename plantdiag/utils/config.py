"""配置加载模块"""
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel


class LLMConfig(BaseModel):
    """推理服务（LLM）配置"""
    api_base: str
    api_key: str
    model: str
    temperature: float = 0.2
    max_tokens: int = 4096
    system_prompt: str = ""
    # 超时与重试
    timeout: float = 30  # 秒，单次请求超时
    max_attempts: int = 5  # 总尝试次数（含首次）
    retry_base_delay: float = 1.0  # 秒，指数退避基数
    retry_max_delay: float = 16.0  # 秒，单次等待上限


class SandboxConfig(BaseModel):
    """沙箱执行配置"""
    timeout_seconds: float = 2.0  # 墙钟超时
    max_operations: int = 200_000  # 生成代码的执行步数上限
    memory_mb: int = 256  # 子进程地址空间上限（仅 POSIX）
    cpu_seconds: int = 2  # 子进程 CPU 时间上限（仅 POSIX）


class KernelConfig(BaseModel):
    """诊断内核配置"""
    max_self_directed_turns: int = 10  # 单次调用内连续自驱动轮次上限
    max_self_corrections: int = 1  # 每轮脚本出错后的重新生成次数
    max_history_turns: Optional[int] = None  # 上下文中保留的对话轮次（None 表示全部）


class StorageConfig(BaseModel):
    """会话存储配置"""
    db_path: Optional[str] = None  # None 时使用 DATA_DIR 或 data/plantdiag.db
    lock_timeout_seconds: float = 900.0  # 会话写锁过期时间
    busy_timeout_seconds: float = 5.0  # SQLite 忙等待超时


class WebConfig(BaseModel):
    """Web 服务配置"""
    host: str = "127.0.0.1"
    port: int = 8000


class Config(BaseModel):
    """全局配置"""
    llm: LLMConfig
    sandbox: SandboxConfig = SandboxConfig()
    kernel: KernelConfig = KernelConfig()
    storage: StorageConfig = StorageConfig()
    web: WebConfig = WebConfig()


def load_config(config_path: Optional[str] = None) -> Config:
    """
    加载配置文件

    Args:
        config_path: 配置文件路径，默认按以下顺序查找：
                     1. 环境变量 CONFIG_PATH
                     2. 项目根目录的 config.yaml

    Returns:
        Config: 配置对象
    """
    if config_path is None:
        # 优先从环境变量读取
        config_path = os.environ.get("CONFIG_PATH")

    if config_path is None:
        # 默认使用项目根目录的 config.yaml
        project_root = Path(__file__).parent.parent.parent
        config_path = project_root / "config.yaml"

    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(
            f"配置文件不存在: {config_path}\n"
            f"请复制 config.yaml.example 并修改为 config.yaml"
        )

    with open(config_path, "r", encoding="utf-8") as f:
        config_dict = yaml.safe_load(f) or {}

    return Config(**config_dict)
