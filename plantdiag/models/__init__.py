"""数据模型模块

组织结构：
- plant: 植物档案模型 (Plant, PlantVitals, CareRequirements)
- session: 诊断会话模型 (DiagnosticSession, ConversationTurn, etc.)
- action: 动作模型 (ActionDescriptor, GeneratedScript)
"""
from plantdiag.models.plant import (
    CareRequirements,
    PlantVitals,
    Plant,
)

from plantdiag.models.session import (
    SessionStatus,
    OPEN_STATUSES,
    can_transition,
    normalize_problem,
    TurnRole,
    ConversationTurn,
    HypothesisEntry,
    VitalsSnapshot,
    SessionFailure,
    SessionSummary,
    SessionView,
    DiagnosticSession,
)

from plantdiag.models.action import (
    ActionTag,
    ActionDescriptor,
    GeneratedScript,
)

__all__ = [
    # 植物档案
    "CareRequirements",
    "PlantVitals",
    "Plant",
    # 会话
    "SessionStatus",
    "OPEN_STATUSES",
    "can_transition",
    "normalize_problem",
    "TurnRole",
    "ConversationTurn",
    "HypothesisEntry",
    "VitalsSnapshot",
    "SessionFailure",
    "SessionSummary",
    "SessionView",
    "DiagnosticSession",
    # 动作
    "ActionTag",
    "ActionDescriptor",
    "GeneratedScript",
]
