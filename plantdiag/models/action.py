"""动作描述数据模型

沙箱脚本执行后产出且仅产出一个 ActionDescriptor。
"""
import json
from enum import Enum
from typing import Dict, Any, Optional

from pydantic import BaseModel, Field, model_validator


class ActionTag(str, Enum):
    """动作类型"""

    ASK_USER = "ASK_USER"
    GET_PLANT_VITALS = "GET_PLANT_VITALS"
    LOG_STATE = "LOG_STATE"
    CONCLUDE = "CONCLUDE"


# 不需要用户输入、执行后立即进入下一轮的动作
SELF_DIRECTED_TAGS = (ActionTag.GET_PLANT_VITALS, ActionTag.LOG_STATE)


def _require_text(payload: Dict[str, Any], field: str, tag: ActionTag) -> None:
    value = payload.get(field)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{tag.value} 需要非空字符串字段 '{field}'")


class ActionDescriptor(BaseModel):
    """动作描述

    Attributes:
        tag: 动作类型
        payload: 动作参数，按 tag 校验
    """

    tag: ActionTag
    payload: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _validate_payload(self) -> "ActionDescriptor":
        payload = self.payload
        if self.tag == ActionTag.ASK_USER:
            _require_text(payload, "question", self.tag)
        elif self.tag == ActionTag.CONCLUDE:
            _require_text(payload, "finding", self.tag)
            _require_text(payload, "recommendation", self.tag)
        elif self.tag == ActionTag.LOG_STATE:
            state = payload.get("state")
            if not isinstance(state, dict) or not state:
                raise ValueError("LOG_STATE 需要非空对象字段 'state'")
            if not all(isinstance(k, str) for k in state):
                raise ValueError("LOG_STATE 的 state 键必须为字符串")
        elif self.tag == ActionTag.GET_PLANT_VITALS:
            reason = payload.get("reason", "")
            if reason is not None and not isinstance(reason, str):
                raise ValueError("GET_PLANT_VITALS 的 reason 必须为字符串")

        try:
            json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise ValueError(f"动作参数无法序列化为 JSON: {e}")
        return self

    @property
    def is_self_directed(self) -> bool:
        return self.tag in SELF_DIRECTED_TAGS

    @property
    def question(self) -> Optional[str]:
        return self.payload.get("question")

    @property
    def finding(self) -> Optional[str]:
        return self.payload.get("finding")

    @property
    def recommendation(self) -> Optional[str]:
        return self.payload.get("recommendation")

    @property
    def state(self) -> Dict[str, Any]:
        return self.payload.get("state") or {}

    @property
    def reason(self) -> str:
        return self.payload.get("reason") or ""

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


class GeneratedScript(BaseModel):
    """推理服务生成的决策脚本（不持久化）"""

    source: str
    attempts: int = 1
