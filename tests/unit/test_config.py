"""Config 模块单元测试"""
import pytest
from pathlib import Path
import sys
import tempfile
import yaml

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from plantdiag.utils.config import (
    Config,
    LLMConfig,
    SandboxConfig,
    KernelConfig,
    StorageConfig,
    load_config,
)


class TestConfigModels:
    """配置模型测试"""

    def test_llm_config(self):
        """测试:LLM 配置默认值"""
        config = LLMConfig(
            api_base="https://api.test.com",
            api_key="test-key",
            model="gpt-4",
        )

        assert config.api_base == "https://api.test.com"
        assert config.temperature == 0.2
        assert config.max_tokens == 4096
        assert config.max_attempts == 5
        assert config.retry_base_delay == 1.0
        assert config.retry_max_delay == 16.0

    def test_llm_config_with_custom_values(self):
        """测试:自定义 LLM 配置"""
        config = LLMConfig(
            api_base="https://api.test.com",
            api_key="test-key",
            model="gpt-3.5-turbo",
            temperature=0.5,
            timeout=10,
            max_attempts=2,
        )

        assert config.temperature == 0.5
        assert config.timeout == 10
        assert config.max_attempts == 2

    def test_kernel_defaults(self):
        """测试:诊断内核默认配置"""
        config = KernelConfig()

        assert config.max_self_directed_turns == 10
        assert config.max_self_corrections == 1
        assert config.max_history_turns is None

    def test_sandbox_defaults(self):
        """测试:沙箱默认配置"""
        config = SandboxConfig()

        assert config.timeout_seconds == 2.0
        assert config.memory_mb == 256
        assert config.max_operations > 0

    def test_storage_defaults(self):
        """测试:存储默认配置"""
        config = StorageConfig()

        assert config.db_path is None
        assert config.lock_timeout_seconds > 0


class TestLoadConfig:
    """load_config 测试"""

    def _write_config(self, tmpdir: str, data: dict) -> str:
        path = Path(tmpdir) / "config.yaml"
        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(data, f, allow_unicode=True)
        return str(path)

    def test_load_minimal_config(self):
        """测试:只配置 llm 时其余部分使用默认值"""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = self._write_config(tmpdir, {
                "llm": {
                    "api_base": "https://api.test.com",
                    "api_key": "test-key",
                    "model": "test-model",
                },
            })

            config = load_config(path)

            assert isinstance(config, Config)
            assert config.llm.model == "test-model"
            assert config.kernel.max_self_directed_turns == 10
            assert config.sandbox.timeout_seconds == 2.0
            assert config.web.port == 8000

    def test_load_full_config(self):
        """测试:加载完整配置"""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = self._write_config(tmpdir, {
                "llm": {
                    "api_base": "https://api.test.com",
                    "api_key": "test-key",
                    "model": "test-model",
                    "max_attempts": 3,
                },
                "sandbox": {"timeout_seconds": 5.0, "max_operations": 1000},
                "kernel": {"max_self_directed_turns": 4, "max_history_turns": 20},
                "storage": {"db_path": "/tmp/plants.db"},
            })

            config = load_config(path)

            assert config.llm.max_attempts == 3
            assert config.sandbox.timeout_seconds == 5.0
            assert config.sandbox.max_operations == 1000
            assert config.kernel.max_self_directed_turns == 4
            assert config.kernel.max_history_turns == 20
            assert config.storage.db_path == "/tmp/plants.db"

    def test_load_config_from_env(self, monkeypatch):
        """测试:从环境变量 CONFIG_PATH 读取配置路径"""
        with tempfile.TemporaryDirectory() as tmpdir:
            path = self._write_config(tmpdir, {
                "llm": {"api_base": "http://x", "api_key": "k", "model": "env-model"},
            })
            monkeypatch.setenv("CONFIG_PATH", path)

            config = load_config()

            assert config.llm.model == "env-model"

    def test_load_config_missing_file(self):
        """测试:配置文件不存在"""
        with pytest.raises(FileNotFoundError) as exc_info:
            load_config("/nonexistent/config.yaml")

        assert "config.yaml.example" in str(exc_info.value)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
