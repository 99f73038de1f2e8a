# Enterprise Autopilot - HTTP API
"""
FastAPI 后端入口

核心端点:
- POST /api/autopilot/run: 触发自动驾驶周期（{company_id?, department?}）
- GET /health: 健康检查
"""

import os

# 加载环境变量
from dotenv import load_dotenv
load_dotenv()

from contextlib import asynccontextmanager

import structlog
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware

from api.models import HealthResponse, RunRequest, RunResponse
from engine.cycle import AutopilotEngine, create_engine
from engine.logging_config import setup_logging
from engine.settings import load_settings

logger = structlog.get_logger()


# ============================================
# 生命周期管理
# ============================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理"""
    setup_logging(os.getenv("LOG_LEVEL", "INFO"), json_logs=os.getenv("LOG_JSON", "") == "1")
    logger.info("启动 Enterprise Autopilot API")
    app.state.engine = create_engine(load_settings())
    yield
    await app.state.engine.close()
    logger.info("关闭 API 服务")


# ============================================
# 应用初始化
# ============================================

app = FastAPI(
    title="Enterprise Autopilot",
    description="企业自动驾驶引擎 API",
    version="0.1.0",
    lifespan=lifespan,
)

cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_engine(request: Request) -> AutopilotEngine:
    return request.app.state.engine


# ============================================
# 端点
# ============================================

@app.get("/health", response_model=HealthResponse)
async def health():
    return HealthResponse()


@app.post("/api/autopilot/run", response_model=RunResponse, response_model_exclude_none=True)
async def run_autopilot(body: RunRequest, engine: AutopilotEngine = Depends(get_engine)):
    """触发自动驾驶周期

    指定 company_id 时绕过频率门控（手动触发）。
    """
    if not body.department_is_known():
        raise HTTPException(status_code=400, detail=f"Unknown department: {body.department}")

    try:
        result = await engine.run(
            company_id=body.company_id,
            department=body.department,
            call_stack=body.call_stack or None,
        )
    except Exception as e:
        logger.error("自动驾驶触发失败", company_id=body.company_id, error=str(e))
        raise HTTPException(status_code=500, detail=str(e))

    return RunResponse(**result)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=os.getenv("API_HOST", "0.0.0.0"), port=int(os.getenv("API_PORT", "8000")))
