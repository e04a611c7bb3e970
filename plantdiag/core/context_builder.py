"""Context Builder - 推理上下文构建

把会话的完整状态和植物当前状况序列化为一个确定性的 payload。
同一会话、同一状况多次构建得到完全相同的结果。
"""
import copy
import json
from typing import Optional, Dict, Any

from plantdiag.exceptions import PlantDiagError
from plantdiag.models import DiagnosticSession, PlantVitals


# 仅供参考的时间戳字段，比较 payload 时忽略
TIMESTAMP_FIELD = "at"


class ContextBuilder:
    """推理上下文构建器"""

    def __init__(self, max_history_turns: Optional[int] = None):
        """
        Args:
            max_history_turns: 保留最近多少轮对话，None 表示保留全部
        """
        if max_history_turns is not None and max_history_turns < 1:
            raise ValueError("max_history_turns 必须为正整数或 None")
        self.max_history_turns = max_history_turns

    def build(self, session: DiagnosticSession, vitals: Optional[PlantVitals]) -> Dict[str, Any]:
        """构建推理上下文

        Args:
            session: 诊断会话（含完整历史）
            vitals: 植物当前状况

        Returns:
            上下文 payload
        """
        turns = session.turns
        truncated = 0
        if self.max_history_turns is not None and len(turns) > self.max_history_turns:
            truncated = len(turns) - self.max_history_turns
            turns = turns[truncated:]

        payload: Dict[str, Any] = {
            "session_id": session.session_id,
            "plant_id": session.plant_id,
            "problem": session.problem,
            "status": session.status.value,
            "plant_vitals": vitals.to_dict() if vitals else None,
            "turns": [
                {
                    "seq": turn.seq,
                    "role": turn.role.value,
                    "text": turn.text,
                    TIMESTAMP_FIELD: turn.created_at.isoformat(),
                }
                for turn in turns
            ],
            "hypotheses": [
                {
                    "seq": entry.seq,
                    "state": copy.deepcopy(entry.state),
                    TIMESTAMP_FIELD: entry.created_at.isoformat(),
                }
                for entry in session.hypotheses
            ],
            "vitals_log": [
                {
                    "seq": snapshot.seq,
                    "reason": snapshot.reason,
                    "vitals": snapshot.vitals.to_dict(),
                    TIMESTAMP_FIELD: snapshot.created_at.isoformat(),
                }
                for snapshot in session.vitals_log
            ],
        }
        if truncated:
            payload["truncated_turns"] = truncated
        return payload

    def with_error(self, payload: Dict[str, Any], error: PlantDiagError) -> Dict[str, Any]:
        """附加上一次脚本执行的错误（用于自我修正）

        Returns:
            新的 payload（原 payload 不变）
        """
        result = copy.deepcopy(payload)
        result["previous_attempt_error"] = {
            "kind": getattr(error, "kind", error.code),
            "message": error.message,
        }
        return result


HISTORY_FIELDS = ("turns", "hypotheses", "vitals_log")


def _strip_timestamps(payload: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(payload)
    for field in HISTORY_FIELDS:
        if field in result:
            result[field] = [
                {k: v for k, v in item.items() if k != TIMESTAMP_FIELD}
                for item in result[field]
            ]
    return result


def to_canonical_json(payload: Dict[str, Any], include_timestamps: bool = False) -> str:
    """规范化序列化 payload（键排序），默认去掉时间戳字段

    用于比较两次构建结果是否一致，以及作为推理服务的输入。
    """
    if not include_timestamps:
        payload = _strip_timestamps(payload)
    return json.dumps(payload, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
