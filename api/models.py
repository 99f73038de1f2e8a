# Enterprise Autopilot - API 数据模型
"""
Pydantic 模型定义

用于触发请求与响应的数据验证。
"""

from typing import Optional

from pydantic import BaseModel, Field

from engine.departments import DEPARTMENT_REGISTRY


class RunRequest(BaseModel):
    """周期触发请求"""
    company_id: Optional[str] = None
    department: Optional[str] = None
    call_stack: list[str] = Field(default_factory=list)

    def department_is_known(self) -> bool:
        return self.department is None or self.department in DEPARTMENT_REGISTRY


class DepartmentResult(BaseModel):
    """单个部门周期结果"""
    company_id: str
    department: str
    cycle_id: str
    success: bool = True
    total_decisions: int = 0
    passed: int = 0
    blocked: int = 0
    pending_review: int = 0
    credits_consumed: int = 0
    execution_time_ms: int = 0
    aborted: bool = False
    abort_reason: Optional[str] = None
    missing: list[str] = Field(default_factory=list)
    error: Optional[str] = None
    capabilities_proposed: list[str] = Field(default_factory=list)
    capability_transitions: list[dict] = Field(default_factory=list)


class RunResponse(BaseModel):
    """周期触发响应"""
    success: bool
    departments_processed: int = 0
    message: Optional[str] = None
    results: list[DepartmentResult] = Field(default_factory=list)


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str = "enterprise-autopilot"
