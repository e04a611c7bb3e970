"""Reasoning Client - 决策脚本生成

把推理上下文交给推理服务，取回一段决策脚本（Python 源码）。
脚本只在沙箱中执行，这里只负责提示词和源码提取。
"""
import re
from typing import Dict, Any

from plantdiag.core.context_builder import to_canonical_json
from plantdiag.exceptions import ReasoningServiceError
from plantdiag.models import GeneratedScript
from plantdiag.services.llm_service import LLMService


REASONING_SYSTEM_PROMPT = """你是一名植物健康诊断专家，运行在一个多轮诊断对话的决策环节中。

每一轮，你需要根据会话上下文写一段 Python 决策脚本。脚本在隔离沙箱中执行，
并且必须恰好产出一个动作。

## 可用名称

- `context`: 当前会话上下文（dict），字段：
  - problem: 用户最初描述的问题
  - plant_vitals: 植物当前状况（名称、光照、浇水、湿度、温度、养护说明），可能为 null
  - turns: 对话历史，每项 {seq, role: "AI" | "User", text}
  - hypotheses: 你之前记录的假设，每项 {seq, state}
  - vitals_log: 你之前主动获取的植物状况，每项 {seq, reason, vitals}
  - previous_attempt_error: （可选）上一次脚本执行失败的原因，请据此修正脚本

- 动作构造函数（只能调用其中一个，且只能调用一次）：
  - `ASK_USER(question)`: 向用户提一个问题，然后等待回复
  - `GET_PLANT_VITALS(reason="")`: 重新获取植物状况，然后继续下一轮
  - `LOG_STATE(key=None, value=None, **state)`: 记录当前假设，然后继续下一轮
  - `CONCLUDE(finding, recommendation)`: 给出诊断结论和处理建议，结束会话

## 写法

两种写法任选其一：

1. 在顶层直接调用一个动作构造函数
2. 定义 `decide(context)` 函数，返回一个动作构造函数的调用结果

## 限制

- 不能 import，不能访问以下划线开头的属性，不能使用 try/with/class/global
- 可用内置函数仅限 len、range、min、max、sorted、any、all、str、int、float 等纯数据函数
- 执行时间和步数有严格上限，不要写死循环

## 诊断策略

1. 如果 plant_vitals 为 null，先调用 GET_PLANT_VITALS
2. 针对具体症状问 2-4 个问题（每轮只问一个，一次只问一件事）
3. 有了初步判断后用 LOG_STATE 记录假设
4. 信息足够时调用 CONCLUDE，给出具体、可执行的建议

## 示例

```python
def decide(context):
    asked = [t for t in context["turns"] if t["role"] == "AI"]
    if len(asked) == 0:
        return ASK_USER("叶子发黄是从下部老叶开始，还是新叶也有？")
    if not context["hypotheses"]:
        return LOG_STATE(suspected="overwatering", confidence="medium")
    return CONCLUDE(
        "浇水过多导致根系缺氧",
        "停止浇水直到表层 3cm 土壤干透，检查盆底排水孔",
    )
```

只输出一个 ```python 代码块，不要输出其他内容。"""


# 匹配 markdown 代码块
CODE_BLOCK_PATTERN = re.compile(r"```(?:python|py)?[ \t]*\n(.*?)```", re.DOTALL)


def extract_source(response: str) -> str:
    """从推理服务响应中提取脚本源码

    优先取第一个代码块，没有代码块时把整个响应当作源码。
    """
    match = CODE_BLOCK_PATTERN.search(response)
    if match:
        return match.group(1).strip()
    return response.strip()


class ReasoningClient:
    """推理客户端"""

    def __init__(self, llm_service: LLMService):
        """
        Args:
            llm_service: LLM 服务
        """
        self._llm_service = llm_service

    def generate(self, payload: Dict[str, Any]) -> GeneratedScript:
        """根据上下文生成决策脚本

        Args:
            payload: ContextBuilder 构建的上下文

        Returns:
            决策脚本

        Raises:
            ReasoningServiceError: 推理服务失败，或响应中没有可用源码
        """
        response = self._llm_service.generate(
            self._build_prompt(payload),
            system_prompt=REASONING_SYSTEM_PROMPT,
        )
        source = extract_source(response)
        if not source:
            raise ReasoningServiceError(
                ReasoningServiceError.PERMANENT,
                "推理服务响应中没有决策脚本",
            )
        return GeneratedScript(
            source=source,
            attempts=getattr(self._llm_service, "last_attempts", 1) or 1,
        )

    def _build_prompt(self, payload: Dict[str, Any]) -> str:
        """构建 user prompt"""
        sections = []

        sections.append("## 用户问题")
        sections.append(payload.get("problem", ""))

        error = payload.get("previous_attempt_error")
        if error:
            sections.append("\n## 上一次脚本执行失败")
            sections.append(f"- 类型: {error.get('kind')}")
            sections.append(f"- 信息: {error.get('message')}")
            sections.append("请修正后重新输出脚本。")

        sections.append("\n## 会话上下文 (context)")
        sections.append("```json")
        sections.append(to_canonical_json(payload))
        sections.append("```")

        sections.append("\n请输出决策脚本。")

        return "\n".join(sections)
