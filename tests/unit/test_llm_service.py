"""llm_service 单元测试"""
import pytest
from pathlib import Path
from unittest.mock import Mock, patch
import sys

import httpx
from openai import (
    APITimeoutError,
    APIConnectionError,
    AuthenticationError,
    BadRequestError,
    InternalServerError,
    RateLimitError,
)

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from plantdiag.exceptions import ReasoningServiceError
from plantdiag.services.llm_service import (
    THINK_TAG_PATTERN,
    LLMService,
    is_transient_error,
)
from plantdiag.utils.config import Config, LLMConfig


REQUEST = httpx.Request("POST", "http://test/chat/completions")


def _status_error(cls, status_code: int):
    return cls(
        f"status {status_code}",
        response=httpx.Response(status_code, request=REQUEST),
        body=None,
    )


def _completion(content: str):
    return Mock(choices=[Mock(message=Mock(content=content))])


def _make_service(max_attempts: int = 5, progress_callback=None):
    """构造 LLMService（OpenAI 客户端被替换为 Mock）"""
    config = Config(llm=LLMConfig(
        api_base="http://test",
        api_key="test",
        model="test-model",
        max_attempts=max_attempts,
    ))
    sleeps = []
    with patch("plantdiag.services.llm_service.openai"):
        service = LLMService(config, progress_callback=progress_callback, sleep=sleeps.append)
    return service, sleeps


class TestThinkTagPattern:
    """<think> 标签正则表达式测试"""

    def test_simple_think_tag(self):
        """测试: 简单的 think 标签"""
        text = "<think>这是思考过程</think>这是实际内容"
        assert THINK_TAG_PATTERN.sub("", text) == "这是实际内容"

    def test_multiline_think_tag(self):
        """测试: 多行 think 标签"""
        text = "<think>\n第一行思考\n第二行思考\n</think>\n```python\nASK_USER('q')\n```"
        assert THINK_TAG_PATTERN.sub("", text).startswith("```python")

    def test_no_think_tag(self):
        """测试: 没有 think 标签"""
        text = "ASK_USER('多久浇一次水？')"
        assert THINK_TAG_PATTERN.sub("", text) == text


class TestCleanResponse:
    """_clean_response 方法测试"""

    def test_clean_response_with_think_tag(self):
        """测试: 清理包含 think 标签的响应"""
        service, _ = _make_service()
        assert service._clean_response("<think>想一想</think>\n  正文  ") == "正文"

    def test_clean_response_none(self):
        """测试: 空响应"""
        service, _ = _make_service()
        assert service._clean_response(None) == ""


class TestIsTransientError:
    """瞬时错误判定测试"""

    def test_transient_errors(self):
        """测试: 超时、连接失败、限流、5xx 为瞬时错误"""
        assert is_transient_error(APITimeoutError(request=REQUEST))
        assert is_transient_error(APIConnectionError(request=REQUEST))
        assert is_transient_error(_status_error(RateLimitError, 429))
        assert is_transient_error(_status_error(InternalServerError, 503))

    def test_permanent_errors(self):
        """测试: 鉴权失败、请求非法为永久错误"""
        assert not is_transient_error(_status_error(AuthenticationError, 401))
        assert not is_transient_error(_status_error(BadRequestError, 400))


class TestRetryPolicy:
    """重试策略测试"""

    def test_backoff_delay(self):
        """测试: 指数退避并封顶"""
        service, _ = _make_service()

        assert service.backoff_delay(1) == 1.0
        assert service.backoff_delay(2) == 2.0
        assert service.backoff_delay(3) == 4.0
        assert service.backoff_delay(10) == 16.0

    def test_success_first_attempt(self):
        """测试: 首次调用成功"""
        service, sleeps = _make_service()
        service.client.chat.completions.create.return_value = _completion("ASK_USER('q')")

        result = service.generate("prompt")

        assert result == "ASK_USER('q')"
        assert service.last_attempts == 1
        assert sleeps == []

    def test_three_transient_failures_then_success(self):
        """测试: 连续 3 次瞬时错误后成功"""
        progress = []
        service, sleeps = _make_service(progress_callback=progress.append)
        service.client.chat.completions.create.side_effect = [
            APITimeoutError(request=REQUEST),
            _status_error(InternalServerError, 500),
            _status_error(RateLimitError, 429),
            _completion("CONCLUDE('f', 'r')"),
        ]

        result = service.generate("prompt")

        assert result == "CONCLUDE('f', 'r')"
        assert service.client.chat.completions.create.call_count == 4
        assert sleeps == [1.0, 2.0, 4.0]
        assert service.last_attempts == 4
        assert len(progress) == 3

    def test_transient_exhausted(self):
        """测试: 瞬时错误重试耗尽"""
        service, sleeps = _make_service(max_attempts=3)
        service.client.chat.completions.create.side_effect = APITimeoutError(request=REQUEST)

        with pytest.raises(ReasoningServiceError) as exc_info:
            service.generate("prompt")

        assert exc_info.value.kind == ReasoningServiceError.TRANSIENT
        assert exc_info.value.attempts == 3
        assert service.client.chat.completions.create.call_count == 3
        assert len(sleeps) == 2

    def test_permanent_error_not_retried(self):
        """测试: 永久错误立即失败"""
        service, sleeps = _make_service()
        service.client.chat.completions.create.side_effect = _status_error(AuthenticationError, 401)

        with pytest.raises(ReasoningServiceError) as exc_info:
            service.generate("prompt")

        assert exc_info.value.kind == ReasoningServiceError.PERMANENT
        assert service.client.chat.completions.create.call_count == 1
        assert sleeps == []

    def test_empty_response_is_permanent(self):
        """测试: 空响应视为永久错误"""
        service, _ = _make_service()
        service.client.chat.completions.create.return_value = _completion("<think>只有思考</think>")

        with pytest.raises(ReasoningServiceError) as exc_info:
            service.generate("prompt")

        assert exc_info.value.kind == ReasoningServiceError.PERMANENT

    def test_system_prompt_prepended(self):
        """测试: 系统提示放在消息列表首位"""
        service, _ = _make_service()
        service.client.chat.completions.create.return_value = _completion("ok")

        service.generate("用户输入", system_prompt="系统提示")

        messages = service.client.chat.completions.create.call_args.kwargs["messages"]
        assert messages[0] == {"role": "system", "content": "系统提示"}
        assert messages[1] == {"role": "user", "content": "用户输入"}


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
