"""
Pytest 配置与公共 fixtures

所有测试使用内存数据存储与 Mock 客户端，不依赖数据库或网络。
"""

from datetime import datetime

import pytest

from agents.executor import MockExecutorClient
from agents.llm import MockLLMClient
from engine.audit import AuditLogger
from engine.models import Decision, DepartmentConfig, ExecutorDefinition, GuardrailResult, RiskLevel
from engine.settings import AutopilotSettings
from storage.memory import InMemoryDataStore

COMPANY = "company-1"

# 当天中午，落在默认活跃时段 09-21 内
NOW = datetime.utcnow().replace(hour=12, minute=0, second=0, microsecond=0)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def company_id() -> str:
    return COMPANY


@pytest.fixture
def store() -> InMemoryDataStore:
    return InMemoryDataStore()


@pytest.fixture
def settings() -> AutopilotSettings:
    return AutopilotSettings()


@pytest.fixture
def llm() -> MockLLMClient:
    return MockLLMClient()


@pytest.fixture
def executor_client() -> MockExecutorClient:
    return MockExecutorClient()


@pytest.fixture
def audit(store) -> AuditLogger:
    return AuditLogger(store)


@pytest.fixture
def make_config():
    """部门配置工厂"""
    def _make(department: str = "marketing", **overrides) -> DepartmentConfig:
        return DepartmentConfig(company_id=COMPANY, department=department, **overrides)
    return _make


@pytest.fixture
def make_decision():
    """决策工厂"""
    def _make(
        decision_type: str = "analyze",
        department: str = "marketing",
        risk_level: RiskLevel = RiskLevel.LOW,
        guardrail_result: GuardrailResult = None,
        **overrides,
    ) -> Decision:
        overrides.setdefault("description", f"{decision_type} for the week")
        return Decision(
            company_id=COMPANY,
            department=department,
            cycle_id="cycle-1",
            decision_type=decision_type,
            risk_level=risk_level,
            guardrail_result=guardrail_result,
            **overrides,
        )
    return _make


@pytest.fixture
def executors() -> list[ExecutorDefinition]:
    return [
        ExecutorDefinition(code="MKT-CONTENT", name="Content Creator", department="marketing", credits_per_use=3),
        ExecutorDefinition(code="MKT-PUBLISHER", name="Publisher", department="marketing", credits_per_use=1),
        ExecutorDefinition(
            code="MKT-IG-IMPORT", name="Instagram Import", department="marketing",
            import_platform="instagram",
        ),
        ExecutorDefinition(
            code="SAL-LEAD-QUALIFIER", name="Lead Qualifier", department="sales",
            credits_per_use=2, required_context=["crm_deals"],
        ),
        ExecutorDefinition(
            code="LEG-CONTRACT-REVIEW", name="Contract Review", department="legal",
            is_implemented=False,
        ),
    ]


@pytest.fixture
def seeded_store(store, executors) -> InMemoryDataStore:
    """已注册执行器的内存存储"""
    for executor in executors:
        store.add_executor(executor)
    return store
