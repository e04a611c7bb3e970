"""诊断 API 接口

每个请求只推进一次诊断调用。会话全部持久化在数据库中，服务重启不丢失。
"""
import logging
from functools import lru_cache
from typing import List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from plantdiag.core.dialogue_manager import DiagnosticDialogueManager
from plantdiag.exceptions import (
    NotFoundError,
    PlantDiagError,
    SessionBusyError,
    SessionStateError,
)
from plantdiag.models import DiagnosticSession, SessionSummary, SessionView
from plantdiag.scripts.init_db import init_database
from plantdiag.utils.config import load_config

logger = logging.getLogger(__name__)

# 创建路由
router = APIRouter()


class StartDiagnosisRequest(BaseModel):
    """开始诊断请求"""
    plant_id: str
    problem: str


class ReplyRequest(BaseModel):
    """回复请求"""
    reply: str


@lru_cache(maxsize=1)
def get_dialogue_manager() -> DiagnosticDialogueManager:
    """按配置创建对话管理器（进程内单例）"""
    config = load_config()
    db_path = init_database(config.storage.db_path, verbose=False)
    return DiagnosticDialogueManager.from_config(config, db_path=db_path)


def _to_http_error(error: Exception) -> HTTPException:
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=404, detail=error.message)
    if isinstance(error, (SessionBusyError, SessionStateError)):
        return HTTPException(status_code=409, detail=error.message)
    if isinstance(error, ValueError):
        return HTTPException(status_code=422, detail=str(error))
    logger.error("诊断请求失败: %s", error)
    message = error.message if isinstance(error, PlantDiagError) else str(error)
    return HTTPException(status_code=500, detail=message)


@router.post("/diagnoses", response_model=SessionView)
def start_diagnosis(
    request: StartDiagnosisRequest,
    manager: DiagnosticDialogueManager = Depends(get_dialogue_manager),
):
    """
    开始诊断

    同一植物、同一问题已有进行中的会话时继续该会话。
    """
    try:
        return manager.start(request.plant_id, request.problem)
    except (PlantDiagError, ValueError) as e:
        raise _to_http_error(e)


@router.post("/diagnoses/{session_id}/reply", response_model=SessionView)
def reply_diagnosis(
    session_id: str,
    request: ReplyRequest,
    manager: DiagnosticDialogueManager = Depends(get_dialogue_manager),
):
    """
    回复诊断提问

    只有处于等待回复状态的会话接受回复，重复回复返回 409。
    """
    try:
        return manager.resume(session_id, request.reply)
    except (PlantDiagError, ValueError) as e:
        raise _to_http_error(e)


@router.get("/diagnoses/{session_id}", response_model=DiagnosticSession)
def get_diagnosis(
    session_id: str,
    manager: DiagnosticDialogueManager = Depends(get_dialogue_manager),
):
    """获取会话详情（对话、假设记录、状况快照）"""
    try:
        return manager.get_session(session_id)
    except PlantDiagError as e:
        raise _to_http_error(e)


@router.get("/plants/{plant_id}/diagnoses", response_model=List[SessionSummary])
def list_plant_diagnoses(
    plant_id: str,
    manager: DiagnosticDialogueManager = Depends(get_dialogue_manager),
):
    """获取某植物的诊断历史（最新在前）"""
    try:
        return manager.get_history(plant_id)
    except PlantDiagError as e:
        raise _to_http_error(e)
