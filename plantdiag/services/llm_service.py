"""LLM API 调用服务

使用 OpenAI SDK 调用兼容 OpenAI API 的推理服务。
重试策略由本服务负责（SDK 自带重试关闭）：
- 瞬时错误（超时、连接失败、限流、5xx）按指数退避重试，直到 max_attempts 耗尽
- 永久错误（鉴权失败、请求非法等）立即失败，不重试
"""
import logging
import re
import time
from typing import List, Dict, Optional, Callable

import openai
from openai import (
    APIError,
    APIStatusError,
    APITimeoutError,
    APIConnectionError,
    RateLimitError,
    InternalServerError,
)

from plantdiag.exceptions import ReasoningServiceError
from plantdiag.utils.config import Config

logger = logging.getLogger(__name__)


# 匹配 <think>...</think> 标签（支持多行）
THINK_TAG_PATTERN = re.compile(r"<think>.*?</think>\s*", re.DOTALL)

# 进度回调类型
ProgressCallback = Callable[[str], None]

# 可重试的 HTTP 状态码（另外所有 5xx 均可重试）
TRANSIENT_STATUS_CODES = (408, 409, 429)


def is_transient_error(error: Exception) -> bool:
    """判断推理服务错误是否为瞬时错误"""
    if isinstance(error, (APITimeoutError, APIConnectionError, RateLimitError, InternalServerError)):
        return True
    if isinstance(error, APIStatusError):
        return error.status_code in TRANSIENT_STATUS_CODES or error.status_code >= 500
    return False


class LLMService:
    """LLM 服务封装"""

    # 默认超时和重试参数
    DEFAULT_TIMEOUT = 30  # 秒
    DEFAULT_MAX_ATTEMPTS = 5
    DEFAULT_RETRY_BASE_DELAY = 1.0  # 秒
    DEFAULT_RETRY_MAX_DELAY = 16.0  # 秒

    def __init__(
        self,
        config: Config,
        progress_callback: Optional[ProgressCallback] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        初始化 LLM 服务

        Args:
            config: 全局配置对象
            progress_callback: 进度回调函数（用于报告重试等状态）
            sleep: 退避等待函数（测试时可替换）
        """
        self.config = config
        self._progress_callback = progress_callback
        self._sleep = sleep
        self.client = openai.OpenAI(
            api_key=config.llm.api_key,
            base_url=config.llm.api_base,
            max_retries=0,
        )
        self.model = config.llm.model
        self.temperature = config.llm.temperature
        self.max_tokens = config.llm.max_tokens
        self.system_prompt = config.llm.system_prompt

        # 超时和重试参数（从配置读取或使用默认值）
        self.timeout = getattr(config.llm, 'timeout', self.DEFAULT_TIMEOUT)
        self.max_attempts = max(1, getattr(config.llm, 'max_attempts', self.DEFAULT_MAX_ATTEMPTS))
        self.retry_base_delay = getattr(config.llm, 'retry_base_delay', self.DEFAULT_RETRY_BASE_DELAY)
        self.retry_max_delay = getattr(config.llm, 'retry_max_delay', self.DEFAULT_RETRY_MAX_DELAY)

        # 最近一次成功调用所用的尝试次数
        self.last_attempts = 0

    def _report_progress(self, message: str):
        """报告进度"""
        if self._progress_callback:
            self._progress_callback(message)

    def backoff_delay(self, attempt: int) -> float:
        """第 attempt 次失败后的等待时间（attempt 从 1 开始）"""
        return min(self.retry_base_delay * (2 ** (attempt - 1)), self.retry_max_delay)

    def _generate(
        self,
        messages: List[Dict[str, str]],
        system_prompt: Optional[str] = None,
        temperature: Optional[float] = None,
    ) -> str:
        """内部方法：生成回复

        Args:
            messages: 对话消息列表 [{"role": "user", "content": "..."}, ...]
            system_prompt: 系统提示（可选，覆盖默认）
            temperature: 温度参数（可选，覆盖默认）

        Returns:
            生成的回复文本

        Raises:
            ReasoningServiceError: 永久错误，或瞬时错误重试耗尽
        """
        # 构建完整的消息列表
        full_messages = []

        if system_prompt is None:
            system_prompt = self.system_prompt

        if system_prompt:
            full_messages.append({"role": "system", "content": system_prompt})

        full_messages.extend(messages)

        # 带重试的 API 调用
        for attempt in range(1, self.max_attempts + 1):
            try:
                response = self.client.chat.completions.create(
                    model=self.model,
                    messages=full_messages,
                    temperature=temperature if temperature is not None else self.temperature,
                    max_tokens=self.max_tokens,
                    timeout=self.timeout,
                )
            except APIError as e:
                error_type = type(e).__name__
                if not is_transient_error(e):
                    logger.error("推理服务永久错误 (%s): %s", error_type, e)
                    raise ReasoningServiceError(
                        ReasoningServiceError.PERMANENT,
                        f"推理服务调用失败 ({error_type}): {e}",
                        attempts=attempt,
                    ) from e

                if attempt >= self.max_attempts:
                    self._report_progress(f"LLM 调用失败 ({error_type})，重试次数已用尽")
                    logger.error("推理服务重试耗尽 (%d 次): %s", attempt, e)
                    raise ReasoningServiceError(
                        ReasoningServiceError.TRANSIENT,
                        f"推理服务暂时不可用，已尝试 {attempt} 次 ({error_type}): {e}",
                        attempts=attempt,
                    ) from e

                wait_time = self.backoff_delay(attempt)
                self._report_progress(
                    f"LLM 调用失败 ({error_type})，{wait_time:g}s 后重试 ({attempt}/{self.max_attempts})..."
                )
                logger.warning(
                    "推理服务瞬时错误 (%s)，%.1fs 后重试 (%d/%d)",
                    error_type, wait_time, attempt, self.max_attempts,
                )
                self._sleep(wait_time)
                continue

            content = self._clean_response(response.choices[0].message.content)
            if not content:
                raise ReasoningServiceError(
                    ReasoningServiceError.PERMANENT,
                    "推理服务返回空响应",
                    attempts=attempt,
                )
            self.last_attempts = attempt
            return content

        # max_attempts >= 1，循环必然 return 或 raise
        raise ReasoningServiceError(ReasoningServiceError.TRANSIENT, "推理服务未被调用", attempts=0)

    def _clean_response(self, content: Optional[str]) -> str:
        """清理 LLM 响应

        - 去除 <think>...</think> 标签（模型的思考过程）
        - 去除首尾空白

        Args:
            content: 原始响应内容

        Returns:
            清理后的响应内容
        """
        if not content:
            return ""
        content = THINK_TAG_PATTERN.sub("", content)
        return content.strip()

    def generate(self, prompt: str, system_prompt: Optional[str] = None) -> str:
        """生成回复（单轮对话）

        Args:
            prompt: 用户输入
            system_prompt: 系统提示（可选）

        Returns:
            生成的回复文本
        """
        messages = [{"role": "user", "content": prompt}]
        return self._generate(messages, system_prompt=system_prompt)
