"""FastAPI 主应用"""
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from plantdiag.api.diagnosis import router as diagnosis_router

# 配置日志
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

# 创建 FastAPI 应用
app = FastAPI(
    title="植物健康诊断助手 API",
    description="多轮对话式植物问题诊断",
    version="0.1.0",
)

# 配置 CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 注册路由
app.include_router(diagnosis_router, prefix="/api", tags=["diagnosis"])


@app.get("/")
async def root():
    """根路径"""
    return {
        "message": "植物健康诊断助手 API",
        "version": "0.1.0",
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """健康检查"""
    return {"status": "ok"}
